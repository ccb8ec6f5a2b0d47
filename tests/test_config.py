"""Tests for settings loading."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from quorum_custody.config import QuorumSettings


class TestQuorumSettings:
    def test_defaults(self):
        settings = QuorumSettings(_env_file=None)
        assert settings.decimal_places == 6
        assert settings.amount_quantum == Decimal("0.000001")
        assert settings.split_rule_policy == "first_match"
        assert settings.max_participants == 20

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("QUORUM_MIN_DEPOSIT_CONFIRMATIONS", "12")
        monkeypatch.setenv("QUORUM_SPLIT_RULE_POLICY", "all_matching")
        monkeypatch.setenv("QUORUM_LOG_LEVEL", "debug")

        settings = QuorumSettings(_env_file=None)
        assert settings.min_deposit_confirmations == 12
        assert settings.split_rule_policy == "all_matching"
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"min_amount": "0"},
            {"min_amount": "10", "max_amount": "1"},
            {"log_level": "verbose"},
            {"split_rule_policy": "random"},
            {"retry_base_delay": 5.0, "retry_max_delay": 1.0},
        ],
    )
    def test_rejects_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            QuorumSettings(_env_file=None, **overrides)
