"""Tests for service configuration."""

import pytest
import torch
import yaml

from vlm_caption_serving.config import ServiceConfig, load_config, select_device


def test_defaults():
    config = ServiceConfig()
    assert config.port == 50051
    assert config.max_concurrent_requests == 16
    assert config.outbound_capacity == 128
    assert config.max_image_bytes == 12 * 1024 * 1024
    assert [m["variant"] for m in config.models] == ["BLIP", "BLIP_QUANTIZED"]


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("CAPTION_PORT", "9000")
    monkeypatch.setenv("CAPTION_DEVICE", "cpu")
    config = ServiceConfig()
    assert config.port == 9000
    assert config.device == "cpu"


def test_load_yaml(tmp_path):
    path = tmp_path / "service.yaml"
    path.write_text(yaml.safe_dump({"max_concurrent_requests": 4, "host": "127.0.0.1", "unknown_key": 1}))
    config = load_config(path)
    assert config.max_concurrent_requests == 4
    assert config.host == "127.0.0.1"


def test_config_path_env(tmp_path, monkeypatch):
    path = tmp_path / "other.yaml"
    path.write_text("port: 6000\n")
    monkeypatch.setenv("CONFIG_PATH", str(path))
    assert load_config().port == 6000


def test_missing_file_uses_defaults(tmp_path):
    assert load_config(tmp_path / "absent.yaml") == ServiceConfig()


def test_rejects_non_mapping(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ValueError):
        load_config(path)


def test_rejects_zero_concurrency():
    with pytest.raises(ValueError):
        ServiceConfig(max_concurrent_requests=0)


def test_select_device():
    assert select_device("cpu") == torch.device("cpu")
    assert isinstance(select_device("auto"), torch.device)
