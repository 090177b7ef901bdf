"""
Unit Tests for Gate Configuration

Tests environment loading, fail-closed validation (GATE-040), reviewer
authorization and the secrets-free dictionary view.
"""

import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.gate_config import (
    ChainCredentials,
    GateConfig,
    GateConfigurationError,
    get_gate_config,
    reset_gate_config,
)
from services.gate_errors import GateErrorCode
from services.subject_models import EvaluationThresholds


GATE_ENV_VARS = (
    "GATE_ALLOWED_REVIEWERS",
    "GATE_AML_EDD_THRESHOLD_USD",
    "GATE_AML_REPORTING_THRESHOLD_USD",
    "GATE_VALUE_REPORTING_THRESHOLD_USD",
    "GATE_EXPIRY_WARNING_DAYS",
    "GATE_AMOUNT_TOLERANCE",
    "GATE_MIN_MARGIN_PCT",
    "GATE_TARGET_MARGIN_PCT",
    "GATE_HIGH_VALUE_PROPOSAL_USD",
    "GATE_MARGINAL_CREDIT_SCORE",
    "XRPL_SIGNING_SECRET",
    "XRPL_ANCHOR_ACCOUNT",
    "XRPL_RELAY_URL",
    "STELLAR_SIGNING_SECRET",
    "STELLAR_ANCHOR_ACCOUNT",
    "STELLAR_RELAY_URL",
    "LEDGER_SUBMIT_TIMEOUT_SECONDS",
    "TEXTGEN_URL",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Start from an environment with no gate variables set."""
    for name in GATE_ENV_VARS:
        monkeypatch.setenv(name, "")
    reset_gate_config()
    yield monkeypatch
    reset_gate_config()


class TestFromEnvironment:

    def test_defaults(self, clean_env) -> None:
        config = GateConfig.from_environment()

        assert config.allowed_reviewers == set()
        assert config.thresholds == EvaluationThresholds()
        assert config.ledger_timeout_seconds == 30.0
        assert config.textgen_url is None
        assert not config.has_credentials("XRPL")

    def test_reviewers_and_thresholds(self, clean_env) -> None:
        clean_env.setenv("GATE_ALLOWED_REVIEWERS", " alice, bob ,,")
        clean_env.setenv("GATE_AML_EDD_THRESHOLD_USD", "75000")
        clean_env.setenv("GATE_EXPIRY_WARNING_DAYS", "45")

        config = GateConfig.from_environment()

        assert config.allowed_reviewers == {"alice", "bob"}
        assert config.thresholds.aml_edd_usd == Decimal("75000")
        assert config.thresholds.expiry_warning_days == 45

    def test_invalid_numbers_fall_back_to_defaults(self, clean_env) -> None:
        clean_env.setenv("GATE_AML_EDD_THRESHOLD_USD", "lots")
        clean_env.setenv("GATE_MARGINAL_CREDIT_SCORE", "seventy")
        clean_env.setenv("LEDGER_SUBMIT_TIMEOUT_SECONDS", "soon")

        config = GateConfig.from_environment()

        assert config.thresholds.aml_edd_usd == Decimal("50000")
        assert config.thresholds.marginal_credit_score == 70
        assert config.ledger_timeout_seconds == 30.0

    def test_chain_needs_all_three_settings(self, clean_env) -> None:
        clean_env.setenv("XRPL_SIGNING_SECRET", "sEd-secret")
        clean_env.setenv("XRPL_ANCHOR_ACCOUNT", "rAnchor")
        clean_env.setenv("STELLAR_SIGNING_SECRET", "SSECRET")

        config = GateConfig.from_environment()
        assert not config.has_credentials("XRPL")

        clean_env.setenv("XRPL_RELAY_URL", "http://relay.test")
        config = GateConfig.from_environment()

        assert config.has_credentials("xrpl")
        assert not config.has_credentials("STELLAR")

    def test_incomplete_chain_logs_warning(self, clean_env, caplog) -> None:
        clean_env.setenv("STELLAR_SIGNING_SECRET", "SSECRET")
        clean_env.setenv("STELLAR_ANCHOR_ACCOUNT", "GANCHOR")

        with caplog.at_level("WARNING", logger="services.gate_config"):
            config = GateConfig.from_environment()

        assert not config.has_credentials("STELLAR")
        warnings = [r.getMessage() for r in caplog.records if r.levelname == "WARNING"]
        assert any("STELLAR signing secret set but incomplete" in m for m in warnings)
        assert any("missing=STELLAR_RELAY_URL" in m for m in warnings)
        assert not any("XRPL" in m for m in warnings)

    def test_singleton(self, clean_env) -> None:
        assert get_gate_config() is get_gate_config()


class TestValidation:

    def test_inverted_aml_thresholds_fail_closed(self) -> None:
        config = GateConfig(thresholds=EvaluationThresholds(
            aml_edd_usd=Decimal("200000"),
            aml_reporting_usd=Decimal("100000"),
        ))

        with pytest.raises(GateConfigurationError) as exc_info:
            config.validate()
        assert exc_info.value.error_code == GateErrorCode.CONFIG_MISSING

    def test_margin_floor_above_target_fails(self) -> None:
        config = GateConfig(thresholds=EvaluationThresholds(min_margin_pct=Decimal("25")))
        with pytest.raises(GateConfigurationError):
            config.validate()

    def test_system_identity_in_reviewer_list_fails(self) -> None:
        with pytest.raises(GateConfigurationError):
            GateConfig(allowed_reviewers={"system"}).validate()

    def test_env_validation_failure_raises(self, clean_env) -> None:
        clean_env.setenv("LEDGER_SUBMIT_TIMEOUT_SECONDS", "0")
        with pytest.raises(GateConfigurationError):
            GateConfig.from_environment()

    def test_defaults_validate(self) -> None:
        GateConfig().validate()


class TestReviewerAuthorization:

    @pytest.mark.parametrize("reviewer", ["", "   ", None, "SYSTEM", "rule-evaluator", "PROOF-ANCHOR"])
    def test_blank_and_system_identities_rejected(self, reviewer) -> None:
        assert GateConfig().is_reviewer_authorized(reviewer) is False

    def test_open_reviewer_list_accepts_humans(self) -> None:
        assert GateConfig().is_reviewer_authorized("carol") is True

    def test_allow_list_enforced(self) -> None:
        config = GateConfig(allowed_reviewers={"alice"})

        assert config.is_reviewer_authorized("alice") is True
        assert config.is_reviewer_authorized(" alice ") is True
        assert config.is_reviewer_authorized("mallory") is False


class TestSerialisation:

    def test_secrets_never_serialised(self) -> None:
        config = GateConfig(chains={
            "XRPL": ChainCredentials("XRPL", "sEd-secret", "rAnchor", "http://relay.test"),
        })

        data = config.to_dict()

        assert data["chains"] == {"XRPL": True, "STELLAR": False}
        assert "sEd-secret" not in repr(data)
        assert "sEd-secret" not in repr(config.chains["XRPL"])
