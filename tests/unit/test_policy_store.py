"""Unit tests for policy loading and caching (promptcalc/policy/store.py)."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from promptcalc.policy.store import (
    DEFAULT_BANNED_PATTERN_RULES,
    DEFAULT_POLICY,
    REQUIRED_BANNER_TEXT,
    REQUIRED_CSP_DIRECTIVES,
    PolicyStore,
    get_policy,
    load_policy_file,
    policy_from_dict,
    reset_policy_cache,
)


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "policy.yaml"
    path.write_text(textwrap.dedent(text))
    return path


class TestPolicyFromDict:
    def test_none_gives_defaults(self) -> None:
        assert policy_from_dict(None) is DEFAULT_POLICY

    def test_structured_document(self) -> None:
        policy = policy_from_dict(
            {
                "specVersion": "2.0",
                "maxArtifactBytes": 1000,
                "requiredBannerText": "Offline only.",
                "requiredCspDirectives": ["default-src 'none'"],
                "bannedPatterns": [
                    {"id": "NO_ALERT", "patterns": ["alert("], "caseSensitive": ["alert("]},
                    {"patterns": ["ignored: no id"]},
                ],
                "bannedTags": [{"id": "NO_VIDEO", "tags": ["video"]}],
            }
        )
        assert policy.spec_version == "2.0"
        assert policy.max_artifact_bytes == 1000
        assert policy.required_banner_text == "Offline only."
        assert policy.required_csp_directives == ("default-src 'none'",)
        assert [rule.id for rule in policy.banned_pattern_rules] == ["NO_ALERT"]
        assert policy.banned_pattern_rules[0].is_case_sensitive("alert(")
        assert policy.banned_tag_rules[0].tags == ("video",)

    def test_legacy_flat_lists(self) -> None:
        policy = policy_from_dict(
            {
                "version": "0.9",
                "required": [
                    "content-security-policy",
                    "default-src 'none'",
                    "connect-src 'none'",
                    "Generated calculator (offline). Do not enter passwords.",
                ],
                "banned": ["fetch(", "eval("],
            }
        )
        assert policy.spec_version == "0.9"
        assert policy.required_csp_directives == ("default-src 'none'", "connect-src 'none'")
        assert policy.required_banner_text == REQUIRED_BANNER_TEXT
        assert policy.banned_pattern_rules[0].patterns == ("fetch(", "eval(")

    def test_invalid_size_falls_back_to_default(self) -> None:
        assert policy_from_dict({"maxArtifactBytes": -5}).max_artifact_bytes == 200_000

    def test_missing_sections_use_defaults(self) -> None:
        policy = policy_from_dict({"specVersion": "1.0"})
        assert policy.banned_pattern_rules == DEFAULT_BANNED_PATTERN_RULES
        assert policy.required_csp_directives == REQUIRED_CSP_DIRECTIVES

    def test_size_override(self) -> None:
        assert DEFAULT_POLICY.with_max_artifact_bytes(None) is DEFAULT_POLICY
        assert DEFAULT_POLICY.with_max_artifact_bytes(10).max_artifact_bytes == 10


class TestPolicyStore:
    def test_loads_first_existing_file(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "specVersion: '3.1'\nmaxArtifactBytes: 5000\n")
        store = PolicyStore([str(tmp_path / "missing.yaml"), str(path)])
        policy = store.get()
        assert policy.spec_version == "3.1"
        assert policy.path == str(path)

    def test_unparseable_file_is_skipped(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.yaml"
        bad.write_text("key: [unclosed\n")
        assert PolicyStore([str(bad)]).get() is DEFAULT_POLICY

    def test_cached_until_reset(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "specVersion: '1'\n")
        store = PolicyStore([str(path)])
        first = store.get()
        path.write_text("specVersion: '2'\n")
        assert store.get() is first
        store.reset()
        assert store.get().spec_version == "2"

    def test_env_path_is_searched_first(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, "specVersion: env\n")
        monkeypatch.setenv("PROMPTCALC_POLICY", str(path))
        reset_policy_cache()
        assert get_policy().spec_version == "env"

    def test_load_policy_file_propagates_yaml_errors(self, tmp_path: Path) -> None:
        import yaml

        bad = tmp_path / "bad.yaml"
        bad.write_text("a: [\n")
        with pytest.raises(yaml.YAMLError):
            load_policy_file(str(bad))
