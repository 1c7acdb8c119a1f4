import argparse
import logging
import os
import sys
from typing import Callable, Optional, Sequence

from . import config as cfg
from .capsule import Capsule
from .config import Config, GEMINI_DEFAULT_PORT, HTTP_DEFAULT_PORT, VERSION
from .exceptions import BergelmirError
from .log import setup_logging
from .utils import ensure_file_directory, write_file

log = logging.getLogger(__name__)

DEFAULT_TORRC = """\
DataDirectory %DATA_DIRECTORY%
SocksPort 0
ControlPort auto
ControlPortWriteToFile %CONTROL_PORT_FILE%
CookieAuthentication 1
CookieAuthFile %COOKIE_AUTH_FILE%
"""

DEFAULT_INDEX_GMI = "# Default Bergelmir Gemini Page\n\nYou should edit this page."

DEFAULT_LAYOUT_HTML = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>%TITLE%</title>
</head>
<body>
  %GEMINI_CONTENT%
</body>
</html>
"""


class Prompter:
    """Line-based questions for the first-run wizard."""

    def __init__(self, read: Callable[[str], str] = input, write: Callable[[str], None] = print):
        self.read = read
        self.write = write

    def text(self, prompt: str, default: str = "") -> str:
        return self.read(prompt).strip() or default

    def yes_no(self, prompt: str, default: bool) -> bool:
        while True:
            answer = self.read(prompt).strip().lower()
            if answer == "y":
                return True
            if answer == "n":
                return False
            if answer == "":
                return default
            self.write('Value must be "Y" or "N".  Try again.')

    def integer(self, prompt: str, low: int, high: int, default: int, forbidden: Sequence[int] = ()) -> int:
        while True:
            answer = self.read(prompt).strip() or str(default)
            try:
                value = int(answer)
            except ValueError:
                value = None
            if value is None or not low <= value <= high:
                self.write(
                    f'Value must be an integer between (and including) "{low}" and "{high}".  Try again.'
                )
            elif value in forbidden:
                self.write(f'Value cannot be "{value}".  Try again.')
            else:
                return value


def _listening_location(prompter: Prompter, service: str, port: int) -> str:
    if prompter.yes_no(f"Limit {service} reachability to localhost [y/N]: ", False):
        return f"127.0.0.1:{port}"
    return f"0.0.0.0:{port}"


def ask_config(prompter: Prompter) -> Config:
    config = Config()
    config.tor.enabled = prompter.yes_no('Enable Tor ".onion" address? [y/N]: ', False)

    gemini_port = prompter.integer(
        "Gemini capsule listening port [ 1965 ]: ", 1, 65535, GEMINI_DEFAULT_PORT
    )
    config.gemini.listening_location = _listening_location(prompter, "Gemini capsule", gemini_port)
    config.gemini.domain_names = prompter.read(
        "Domain names of Gemini capsule (space separated):\n"
    ).split()
    config.gemini.data_path = prompter.text("Path for Gemini capsule files [ gemini/ ]: ", "gemini/")
    if config.tor.enabled:
        config.gemini.tor.virtual_port = prompter.integer(
            "Tor listening port for Gemini capsule [ 1965 ]: ", 1, 65535, GEMINI_DEFAULT_PORT
        )

    config.rss.enabled = prompter.yes_no("Enable RSS feed at /rss and /feed URLs? [Y/n]: ", True)
    if config.rss.enabled:
        config.rss.feed_source_gemini_path = prompter.text(
            "Gemini source path for RSS feed [ /blog ]: ", "blog"
        )

    config.http.enabled = prompter.yes_no("Enable HTTP server? [Y/n]: ", True)
    if config.http.enabled:
        http_port = prompter.integer(
            "HTTP server listening port [ 8080 ]: ", 1, 65535, 8080, [gemini_port]
        )
        config.http.listening_location = _listening_location(prompter, "HTTP server", http_port)
        config.http.data_path = prompter.text("Path for HTTP server files [ http/ ]: ", "http/")
        config.http.layout_html_path = config.http.data_path.rstrip("/") + "/layout.html"
        config.http.default_page_title = prompter.read("Default HTML page title: ").strip()
        if config.tor.enabled:
            config.http.tor.virtual_port = prompter.integer(
                "Tor listening port for HTTP Server [ 80 ]: ",
                1,
                65535,
                HTTP_DEFAULT_PORT,
                [config.gemini.tor.virtual_port],
            )
    return config


def create_project_files(config: Config) -> None:
    """Create the directories and default files the configuration points at."""
    tor = config.tor
    for path in (
        tor.torrc_path,
        tor.control_port_file_path,
        tor.control_auth_cookie_path,
        tor.hidden_service_private_key_path,
        config.gemini.tls.cert_path,
        config.gemini.tls.key_path,
    ):
        ensure_file_directory(path)

    if not os.path.exists(tor.torrc_path):
        torrc = (
            DEFAULT_TORRC.replace("%COOKIE_AUTH_FILE%", tor.control_auth_cookie_path)
            .replace("%CONTROL_PORT_FILE%", tor.control_port_file_path)
            .replace("%DATA_DIRECTORY%", os.path.join(os.path.dirname(tor.torrc_path), "data"))
        )
        write_file(tor.torrc_path, torrc.encode("utf-8"))

    gemini_dir = config.gemini.data_path.rstrip("/") + "/"
    ensure_file_directory(gemini_dir)
    if not any(os.path.exists(os.path.join(gemini_dir, f"index{ext}")) for ext in (".gmi", ".gemini")):
        write_file(os.path.join(gemini_dir, "index.gmi"), DEFAULT_INDEX_GMI.encode("utf-8"))

    ensure_file_directory(config.http.data_path.rstrip("/") + "/")
    if not os.path.exists(config.http.layout_html_path):
        ensure_file_directory(config.http.layout_html_path)
        write_file(config.http.layout_html_path, DEFAULT_LAYOUT_HTML.encode("utf-8"))


def init_project(config_path: str, prompter: Optional[Prompter] = None) -> Optional[Config]:
    prompter = prompter or Prompter()
    if os.path.exists(config_path):
        if not prompter.yes_no(
            f"{config_path} already exists.\nCreate new config file anyways?\n"
            f"This will overwrite {config_path} [y/N]: ",
            False,
        ):
            prompter.write("Exiting...")
            return None
        prompter.write("")

    prompter.write("Initializing Bergelmir Project")
    config = ask_config(prompter)
    create_project_files(config)
    cfg.save_config(config, config_path)
    return config


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bergelmir",
        description="Gemini capsule server with optional Tor onion service",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("-V", "--version", action="version", version="bergelmir " + VERSION)
    parser.add_argument(
        "-c", "--config", default=cfg.CONFIG_FILE_PATH, metavar="FILE", help="Configuration file"
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        type=str.lower,
        choices=["run", "init"],
        help="Start the capsule, or create a new project interactively",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = create_parser().parse_args(argv)

    if args.command == "init":
        setup_logging(args.log_level or "INFO")
        try:
            init_project(args.config)
        except (BergelmirError, OSError) as e:
            raise SystemExit(f"Unable to initialize project: {e}") from e
        except (EOFError, KeyboardInterrupt):
            raise SystemExit(1)
        return 0

    try:
        config = cfg.load_config(args.config)
    except BergelmirError as e:
        raise SystemExit(f"{e}\nExiting...") from e
    setup_logging(args.log_level or config.log_level)

    try:
        Capsule(config).run()
    except BergelmirError as e:
        log.error("[ERROR] %s", e)
        raise SystemExit(f"{e}") from e
    return 0


if __name__ == "__main__":
    sys.exit(main())
