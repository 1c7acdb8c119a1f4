import pytest

from bergelmir.config import Config, load_config, save_config
from bergelmir.exceptions import ConfigError


def test_defaults():
    config = Config()
    assert config.gemini.listening_location == "127.0.0.1:1965"
    assert config.gemini.tor.virtual_port == 1965
    assert config.http.tor.virtual_port == 80
    assert config.tor.control_timeout == 60.0
    assert config.tor.enabled is False


def test_load_partial_file_keeps_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "tor:\n"
        "  enabled: true\n"
        "gemini:\n"
        "  domain_names: [example.org, example.net]\n"
        "  tls:\n"
        "    cert_path: certs/capsule.pem\n"
        "http:\n"
        "  enabled: true\n"
    )
    config = load_config(str(path))
    assert config.tor.enabled is True
    assert config.tor.torrc_path == "tor/torrc"
    assert config.gemini.domain_names == ["example.org", "example.net"]
    assert config.gemini.tls.cert_path == "certs/capsule.pem"
    assert config.gemini.tls.key_path == "tls/cert.key"
    assert config.http.tor.virtual_port == 80


def test_domain_names_as_string(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("gemini:\n  domain_names: example.org example.net\n")
    assert load_config(str(path)).gemini.domain_names == ["example.org", "example.net"]


def test_empty_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(str(path)) == Config()


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError) as excinfo:
        load_config(str(tmp_path / "nope.yaml"))
    assert "bergelmir init" in str(excinfo.value)


def test_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("gemini: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_section_must_be_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("gemini: 42\n")
    with pytest.raises(ConfigError) as excinfo:
        load_config(str(path))
    assert "config.gemini" in str(excinfo.value)


def test_save_and_load(tmp_path):
    path = str(tmp_path / "config.yaml")
    config = Config()
    config.gemini.domain_names = ["example.org"]
    config.http.enabled = True
    config.http.tor.virtual_port = 8081
    save_config(config, path)
    assert load_config(path) == config
