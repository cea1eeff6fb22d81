"""Tests for the travel policy loader."""

from pathlib import Path

import pytest

from app.services.travel_policy import (
    DEFAULT_POLICY,
    TravelPolicy,
    compute_policy_hash,
    get_travel_policy,
    load_travel_policy,
    policy_from_dict,
)

POLICY_FILE = "jamaica-travel-v1.yaml"


class TestTravelPolicyLoader:
    """Tests for loading policy files."""

    def test_shipped_policy_matches_builtin_defaults(self) -> None:
        """The YAML file and the built-in table describe the same policy."""
        policy = load_travel_policy(POLICY_FILE)

        assert policy == TravelPolicy(version="1.0.0")
        assert policy.content_hash is not None
        assert len(policy.content_hash) == 64

    def test_hash_is_stable_across_loads(self) -> None:
        first = load_travel_policy(POLICY_FILE)
        second = load_travel_policy(POLICY_FILE)

        assert first.content_hash == second.content_hash

    def test_compute_hash_is_deterministic(self) -> None:
        assert compute_policy_hash("a") == compute_policy_hash("a")
        assert compute_policy_hash("a") != compute_policy_hash("b")

    def test_missing_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_travel_policy("nonexistent-policy.yaml")

    def test_load_from_custom_directory(self, tmp_path: Path) -> None:
        (tmp_path / "custom.yaml").write_text(
            "version: '2.0.0'\n"
            "default_speed_kmh: 50\n"
            "zones:\n"
            "  - name: city\n"
            "    speed_kmh: 20\n"
            "    keywords: [Montego Bay]\n"
            "congestion:\n"
            "  rush: 1.5\n",
            encoding="utf-8",
        )

        policy = load_travel_policy("custom.yaml", policies_dir=tmp_path)

        assert policy.version == "2.0.0"
        assert policy.default_speed_kmh == 50
        assert [z.name for z in policy.zones] == ["city"]
        assert policy.rush_factor == 1.5
        # Unspecified sections fall back to the defaults
        assert policy.weekend_factor == DEFAULT_POLICY.weekend_factor
        assert policy.max_minutes == DEFAULT_POLICY.max_minutes

    def test_empty_mapping_uses_defaults(self) -> None:
        policy = policy_from_dict({})

        assert policy.zones == DEFAULT_POLICY.zones
        assert policy.version == "unknown"


class TestGetTravelPolicy:
    """Tests for the cached accessor."""

    def test_default_policy_without_file(self) -> None:
        assert get_travel_policy() is DEFAULT_POLICY

    def test_timezone_override(self) -> None:
        policy = get_travel_policy(None, "UTC")

        assert policy.timezone == "UTC"
        assert policy.zones == DEFAULT_POLICY.zones
