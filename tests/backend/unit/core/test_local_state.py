"""Tests for the read-only views over the tools' on-disk state."""

from __future__ import annotations

import json

from pathlib import Path

import pytest

from core.local_state import LocalToolState, codex_model_slug, pick_lowest_reasoning_effort


def write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload))


class TestPickLowestReasoningEffort:
    @pytest.mark.parametrize(
        ("supported", "expected"),
        [
            (["high", "medium", "low"], "low"),
            (["xhigh", "medium"], "medium"),
            ([" high ", ""], "high"),
            (["turbo", "warp"], "turbo"),
            ([], ""),
        ],
    )
    def test_pick(self, supported: list[str], expected: str) -> None:
        assert pick_lowest_reasoning_effort(supported) == expected


class TestCodexState:
    """Codex models cache and config.toml."""

    def test_slug_fallbacks(self) -> None:
        assert codex_model_slug({"slug": "gpt-5"}) == "gpt-5"
        assert codex_model_slug({"id": " gpt-5-codex "}) == "gpt-5-codex"
        assert codex_model_slug({"model": "o4"}) == "o4"
        assert codex_model_slug({}) == ""

    def test_cached_models_skip_non_objects(self, local_state: LocalToolState) -> None:
        write_json(local_state.codex_models_cache_path, {"models": [{"slug": "gpt-5"}, "junk", 3]})

        assert local_state.codex_cached_models() == [{"slug": "gpt-5"}]

    def test_missing_cache(self, local_state: LocalToolState) -> None:
        assert local_state.codex_cached_models() == []

    def test_configured_model(self, local_state: LocalToolState) -> None:
        local_state.codex_config_path.parent.mkdir(parents=True)
        local_state.codex_config_path.write_text('approval = "never"\nmodel = "gpt-5-codex"\n')

        assert local_state.codex_configured_model() == "gpt-5-codex"

    def test_reasoning_effort_from_metadata(self, local_state: LocalToolState) -> None:
        write_json(
            local_state.codex_models_cache_path,
            {
                "models": [
                    {
                        "slug": "gpt-5",
                        "supported_reasoning_levels": [{"effort": "high"}, {"effort": "low"}, "bogus"],
                    }
                ]
            },
        )

        assert local_state.codex_reasoning_effort("gpt-5") == "low"

    def test_reasoning_effort_uses_configured_model(self, local_state: LocalToolState) -> None:
        write_json(
            local_state.codex_models_cache_path,
            {"models": [{"slug": "gpt-5-codex", "supported_reasoning_levels": [{"effort": "high"}]}]},
        )
        local_state.codex_config_path.write_text('model = "gpt-5-codex"\n')

        assert local_state.codex_reasoning_effort("") == "high"

    def test_reasoning_effort_fallback(self, local_state: LocalToolState) -> None:
        assert local_state.codex_reasoning_effort("") == "medium"
        assert local_state.codex_reasoning_effort("unknown-model") == "medium"


class TestClaudeState:
    def test_used_models_first_seen_order(self, local_state: LocalToolState) -> None:
        write_json(
            local_state.claude_stats_path,
            {
                "modelUsage": {"claude-opus-4-1": {}, "claude-sonnet-4-5": {}},
                "monthlyUsage": {
                    "2025-01": {"claude-sonnet-4-5": {}, "claude-3-haiku": {}},
                    "2025-02": "corrupt",
                },
            },
        )

        assert local_state.claude_used_models() == ["claude-opus-4-1", "claude-sonnet-4-5", "claude-3-haiku"]

    def test_missing_stats(self, local_state: LocalToolState) -> None:
        assert local_state.claude_used_models() == []


class TestGeminiState:
    def test_default_gemini_home(self, home: Path) -> None:
        state = LocalToolState(home=home)

        assert state.gemini_home == home / ".gemini"
        assert state.gemini_creds_path == home / ".gemini" / "oauth_creds.json"

    def test_history_files(self, home: Path, tmp_path: Path) -> None:
        state = LocalToolState(home=home, gemini_home=tmp_path / "g")
        write_json(tmp_path / "g" / "tmp" / "abc" / "chats" / "session.json", {})

        assert [p.name for p in state.gemini_history_files(10)] == ["session.json"]
