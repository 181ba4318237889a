import pytest

from asterlog.config import (
    DEFAULT_MAX_LOG_SIZE,
    DEFAULT_ROTATION_INTERVAL,
    BinaryEncoding,
    ConfigError,
    LogLevel,
    Protocol,
    load_config,
)

VALID_CONFIG = """
listeners:
  - port: 8600
    protocol: UDP
    log_file: logs/udp.log
    log_level: DEBUG
    binary_encoding: hex
  - port: 9000
    protocol: TCP
    log_file: logs/tcp.log
    log_level: DATA
  - port: 9443
    protocol: TLS
    log_file: logs/tls.log
    log_level: DEBUG
    tls_cert_file: server.crt
    tls_key_file: server.key
    name: secure-feed
    max_log_size: 1024
    rotation_interval: 60
"""


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


def test_load_valid_config(tmp_path):
    config = load_config(write_config(tmp_path, VALID_CONFIG))
    udp, tcp, tls = config.listeners

    assert udp.protocol == Protocol.UDP
    assert udp.binary_encoding == BinaryEncoding.HEX
    assert udp.name == "UDP:8600"

    assert tcp.log_level == LogLevel.DATA
    assert tcp.binary_encoding == BinaryEncoding.BASE64
    assert tcp.max_log_size == DEFAULT_MAX_LOG_SIZE
    assert tcp.rotation_interval == DEFAULT_ROTATION_INTERVAL

    assert tls.name == "secure-feed"
    assert tls.tls_cert_file == "server.crt"
    assert tls.max_log_size == 1024
    assert tls.rotation_interval == 60


def test_empty_binary_encoding_defaults_to_base64(tmp_path):
    text = """
listeners:
  - {port: 9000, protocol: TCP, log_file: a.log, log_level: DEBUG, binary_encoding: ""}
"""
    config = load_config(write_config(tmp_path, text))
    assert config.listeners[0].binary_encoding == BinaryEncoding.BASE64


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="failed to read config file"):
        load_config(tmp_path / "missing.yaml")


def test_malformed_yaml(tmp_path):
    with pytest.raises(ConfigError, match="failed to parse config file"):
        load_config(write_config(tmp_path, "listeners: [\n"))


@pytest.mark.parametrize("text", [
    "",
    "listeners: []",
    "listeners:\n  - {port: 0, protocol: TCP, log_file: a.log, log_level: DEBUG}",
    "listeners:\n  - {port: 70000, protocol: TCP, log_file: a.log, log_level: DEBUG}",
    "listeners:\n  - {port: 9000, protocol: SCTP, log_file: a.log, log_level: DEBUG}",
    "listeners:\n  - {port: 9000, protocol: TCP, log_file: '', log_level: DEBUG}",
    "listeners:\n  - {port: 9000, protocol: TCP, log_file: a.log, log_level: INFO}",
    "listeners:\n  - {port: 9000, protocol: TCP, log_file: a.log, log_level: DEBUG, binary_encoding: ascii85}",
    "listeners:\n  - {port: 9443, protocol: TLS, log_file: a.log, log_level: DEBUG}",
    "listeners:\n  - {port: 9443, protocol: TLS, log_file: a.log, log_level: DEBUG, tls_cert_file: a.crt}",
])
def test_invalid_config(tmp_path, text):
    with pytest.raises(ConfigError, match="invalid configuration"):
        load_config(write_config(tmp_path, text))
