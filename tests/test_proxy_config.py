# Waypoint
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for proxy configuration loading."""

import pytest
import yaml

from waypoint.proxy.config import (
    DEFAULT_MAX_BODY_MB,
    DEFAULT_PORT,
    DEFAULT_USER_AGENT,
    ProxyConfig,
    load_config,
    parse_bool,
    parse_list,
)


class TestParsers:
    @pytest.mark.parametrize("value", ["false", "FALSE", " false ", "0", "no", "off"])
    def test_parse_bool_false(self, value):
        assert parse_bool(value) is False

    @pytest.mark.parametrize("value", ["true", "1", "yes", "anything"])
    def test_parse_bool_true(self, value):
        assert parse_bool(value) is True

    def test_parse_bool_default(self):
        assert parse_bool(None) is True
        assert parse_bool(None, default=False) is False

    def test_parse_list_from_string(self):
        assert parse_list("a.com, *.b.com,,") == ["a.com", "*.b.com"]

    def test_parse_list_from_yaml_list(self):
        assert parse_list(["a.com", " b.com "]) == ["a.com", "b.com"]

    def test_parse_list_rejects_other_types(self):
        assert parse_list(42) == []
        assert parse_list(None) == []


class TestProxyConfig:
    def test_defaults(self):
        config = ProxyConfig()
        assert config.port == DEFAULT_PORT
        assert config.enable_rewrite is True
        assert config.max_body_mb == DEFAULT_MAX_BODY_MB
        assert config.user_agent == DEFAULT_USER_AGENT
        assert config.allowlist == []
        assert config.blocklist == []

    def test_max_body_bytes(self):
        assert ProxyConfig(max_body_mb=2).max_body_bytes == 2 * 1024 * 1024

    def test_build_policy(self):
        config = ProxyConfig(allowlist=["*.example.com"], blocklist=["bad.example.com"])
        policy = config.build_policy()
        assert policy.is_allowed("good.example.com") is True
        assert policy.is_allowed("bad.example.com") is False
        assert policy.is_allowed("other.org") is False


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml", environ={})
        assert config.port == DEFAULT_PORT
        assert config.enable_rewrite is True

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "proxy.yaml"
        path.write_text(
            yaml.dump(
                {
                    "port": 9000,
                    "allowlist": ["example.com", "*.edu"],
                    "blocklist": "evil.edu",
                    "enable_rewrite": False,
                    "max_body_mb": 5,
                    "audit_log_path": str(tmp_path / "audit.log"),
                }
            )
        )
        config = load_config(path, environ={})
        assert config.port == 9000
        assert config.allowlist == ["example.com", "*.edu"]
        assert config.blocklist == ["evil.edu"]
        assert config.enable_rewrite is False
        assert config.max_body_mb == 5
        assert config.audit_log_path.endswith("audit.log")

    def test_env_overrides_file(self, tmp_path):
        path = tmp_path / "proxy.yaml"
        path.write_text(yaml.dump({"port": 9000, "allowlist": ["file.com"]}))
        env = {
            "PORT": "8123",
            "ALLOWLIST": "example.com,*.edu",
            "BLOCKLIST": "bad.edu",
            "ENABLE_REWRITE": "false",
            "MAX_BODY_MB": "1",
        }
        config = load_config(path, environ=env)
        assert config.port == 8123
        assert config.allowlist == ["example.com", "*.edu"]
        assert config.blocklist == ["bad.edu"]
        assert config.enable_rewrite is False
        assert config.max_body_mb == 1

    def test_enable_rewrite_only_disabled_explicitly(self, tmp_path):
        config = load_config(tmp_path / "none.yaml", environ={"ENABLE_REWRITE": "true"})
        assert config.enable_rewrite is True

    def test_invalid_env_numbers_ignored(self, tmp_path):
        config = load_config(tmp_path / "none.yaml", environ={"PORT": "abc", "MAX_BODY_MB": "x"})
        assert config.port == DEFAULT_PORT
        assert config.max_body_mb == DEFAULT_MAX_BODY_MB

    def test_config_path_from_env(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.dump({"port": 7777}))
        config = load_config(environ={"WAYPOINT_CONFIG": str(path)})
        assert config.port == 7777

    def test_invalid_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "proxy.yaml"
        path.write_text("just a string")
        config = load_config(path, environ={})
        assert config.port == DEFAULT_PORT

    def test_bad_values_use_defaults(self, tmp_path):
        path = tmp_path / "proxy.yaml"
        path.write_text(yaml.dump({"port": "not-a-port"}))
        config = load_config(path, environ={})
        assert config.port == DEFAULT_PORT
