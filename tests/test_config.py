"""Tests for runtime configuration loading."""

import json
from pathlib import Path

import pytest

from zkstate.config import ZappConfig


class TestDefaults:
    def test_defaults(self) -> None:
        config = ZappConfig()
        assert config.tree.depth == 32
        assert config.tree.field_bits == 254
        assert config.store.path is None
        assert config.prover.max_attempts == 1
        assert config.chain.is_configured is False

    def test_policies_follow_sections(self) -> None:
        config = ZappConfig.from_dict({
            "prover": {"timeout_s": 30, "max_attempts": 2, "backoff_s": 0.5},
            "chain": {"timeout_s": None},
        })
        prover_policy = config.prover.policy()
        assert prover_policy.timeout_s == 30
        assert prover_policy.max_attempts == 2
        assert config.chain.policy().timeout_s is None


class TestFromDict:
    def test_partial_data(self) -> None:
        config = ZappConfig.from_dict({"tree": {"depth": 64}, "log_level": "debug"})
        assert config.tree.depth == 64
        assert config.log_level == "DEBUG"
        assert config.prover.url == "http://localhost:8080"

    def test_string_values_coerced(self) -> None:
        config = ZappConfig.from_dict({
            "tree": {"depth": "20"},
            "store": {"path": "data/c.json"},
            "chain": {"chain_id": "1337", "default_gas": "100", "abi_path": "abi.json"},
        })
        assert config.tree.depth == 20
        assert config.store.path == Path("data/c.json")
        assert config.chain.chain_id == 1337
        assert config.chain.default_gas == 100
        assert config.chain.abi_path == Path("abi.json")

    def test_depth_bounded_by_field(self) -> None:
        with pytest.raises(ValueError, match="between 1 and 254"):
            ZappConfig.from_dict({"tree": {"depth": 300}})
        with pytest.raises(ValueError):
            ZappConfig.from_dict({"tree": {"depth": 0}})


class TestFromFiles:
    def test_from_json(self, tmp_path: Path) -> None:
        path = tmp_path / "zapp.json"
        path.write_text(json.dumps({
            "chain": {
                "private_key": "0xabc",
                "contract_address": "0xdef",
                "abi_path": "abi.json",
            },
        }))
        config = ZappConfig.from_json(path)
        assert config.chain.is_configured is True

    def test_from_json_missing(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            ZappConfig.from_json(tmp_path / "missing.json")

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("ZAPP_TREE_DEPTH", "24")
        monkeypatch.setenv("ZAPP_PROVER_URL", "http://prover:9000")
        monkeypatch.setenv("ZAPP_CHAIN_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("ZAPP_LOG_LEVEL", "warning")
        config = ZappConfig.from_env(dotenv_path=tmp_path / "absent.env")
        assert config.tree.depth == 24
        assert config.prover.url == "http://prover:9000"
        assert config.chain.max_attempts == 3
        assert config.log_level == "WARNING"

    def test_from_env_reads_dotenv(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        # recorded first so teardown removes what load_dotenv sets
        monkeypatch.setenv("ZAPP_STORE_PATH", "unset")
        monkeypatch.delenv("ZAPP_STORE_PATH")
        env_file = tmp_path / ".env"
        env_file.write_text("ZAPP_STORE_PATH=/tmp/zapp/commitments.json\n")
        config = ZappConfig.from_env(dotenv_path=env_file)
        assert config.store.path == Path("/tmp/zapp/commitments.json")
