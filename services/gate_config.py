"""
============================================================================
Tradegate Risk Engine - Configuration
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All thresholds use decimal.Decimal
Traceability: Configuration loading is logged (secrets never logged)

This module provides configuration management for the engine:
- Environment variable parsing with type safety (python-dotenv loaded first)
- Default values for rule thresholds
- Ledger credential presence (drives proof-anchor dry-run mode)
- Collaborator endpoints (text generation, ledger relays)
- Fail-closed validation (GATE-040)

ENVIRONMENT VARIABLES:
    - GATE_ALLOWED_REVIEWERS: Comma-separated human reviewer IDs (optional)
    - GATE_AML_EDD_THRESHOLD_USD: Enhanced due diligence floor (default: 50000)
    - GATE_AML_REPORTING_THRESHOLD_USD: Very-high-value floor (default: 100000)
    - GATE_VALUE_REPORTING_THRESHOLD_USD: Reporting advisory floor (default: 10000)
    - GATE_EXPIRY_WARNING_DAYS: Instrument expiry window (default: 30)
    - GATE_AMOUNT_TOLERANCE: Instrument amount tolerance (default: 0.01)
    - GATE_MIN_MARGIN_PCT / GATE_TARGET_MARGIN_PCT: (default: 15 / 20)
    - GATE_HIGH_VALUE_PROPOSAL_USD / GATE_MARGINAL_CREDIT_SCORE: (default: 10000 / 70)
    - XRPL_SIGNING_SECRET / STELLAR_SIGNING_SECRET: chain credentials
    - XRPL_ANCHOR_ACCOUNT / STELLAR_ANCHOR_ACCOUNT: self-transfer accounts
    - XRPL_RELAY_URL / STELLAR_RELAY_URL: ledger submission relays
    - LEDGER_SUBMIT_TIMEOUT_SECONDS: per-chain timeout (default: 30)
    - TEXTGEN_URL: text-generation collaborator (optional)

ERROR CODES:
    - GATE-040: Required configuration missing or invalid

============================================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Set, Dict, Any
import logging
import os

from dotenv import load_dotenv

from services.gate_errors import GateError, GateErrorCode
from services.subject_models import EvaluationThresholds

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

SUPPORTED_CHAINS = ("XRPL", "STELLAR")

# Identities the automated path uses; never accepted as a human reviewer
SYSTEM_ACTORS = frozenset({"SYSTEM", "RULE-EVALUATOR", "PROOF-ANCHOR"})

DEFAULT_LEDGER_TIMEOUT_SECONDS = 30.0


# =============================================================================
# Configuration Exception
# =============================================================================

class GateConfigurationError(GateError):
    """
    Raised when configuration is invalid.

    Enforces fail-closed behaviour at startup (GATE-040).
    """
    error_code = GateErrorCode.CONFIG_MISSING


# =============================================================================
# Chain Credentials
# =============================================================================

@dataclass(frozen=True)
class ChainCredentials:
    """Signing credentials and relay endpoint for one ledger."""
    chain: str
    signing_secret: Optional[str] = None
    account: Optional[str] = None
    relay_url: Optional[str] = None

    @property
    def configured(self) -> bool:
        """True when a submission can actually be attempted."""
        return bool(self.signing_secret and self.account and self.relay_url)

    def __repr__(self) -> str:
        return (
            f"ChainCredentials(chain={self.chain!r}, configured={self.configured}, "
            f"account={self.account!r}, relay_url={self.relay_url!r})"
        )


# =============================================================================
# GateConfig Class
# =============================================================================

@dataclass
class GateConfig:
    """
    Engine configuration.

    ============================================================================
    CONFIGURATION PARAMETERS:
    ============================================================================
    - allowed_reviewers: Human reviewer IDs (empty = any non-system identity)
    - thresholds: Rule thresholds handed to the evaluator
    - chains: Per-ledger credentials (XRPL, STELLAR)
    - ledger_timeout_seconds: Per-chain submission timeout
    - textgen_url: Text-generation collaborator endpoint (optional)
    ============================================================================
    """

    allowed_reviewers: Set[str] = field(default_factory=set)
    thresholds: EvaluationThresholds = field(default_factory=EvaluationThresholds)
    chains: Dict[str, ChainCredentials] = field(default_factory=dict)
    ledger_timeout_seconds: float = DEFAULT_LEDGER_TIMEOUT_SECONDS
    textgen_url: Optional[str] = None

    def credentials_for(self, chain: str) -> ChainCredentials:
        chain = chain.upper()
        return self.chains.get(chain, ChainCredentials(chain=chain))

    def has_credentials(self, chain: str) -> bool:
        return self.credentials_for(chain).configured

    def is_reviewer_authorized(self, reviewer_id: Optional[str]) -> bool:
        """
        Check whether an identity may approve, reject or resolve.

        System identities are never accepted. When allowed_reviewers is
        empty any other non-blank identity is accepted.
        """
        if not reviewer_id or not reviewer_id.strip():
            return False
        reviewer = reviewer_id.strip()
        if reviewer.upper() in SYSTEM_ACTORS:
            return False
        if not self.allowed_reviewers:
            return True
        return reviewer in self.allowed_reviewers

    def validate(self) -> None:
        """
        Validate configuration completeness.

        Raises:
            GateConfigurationError: If any value is out of range (GATE-040)
        """
        errors: List[str] = []
        t = self.thresholds

        if t.aml_edd_usd <= 0 or t.aml_reporting_usd <= 0 or t.value_reporting_usd <= 0:
            errors.append("AML and value thresholds must be positive")
        if t.value_reporting_usd > t.aml_edd_usd:
            errors.append(
                "GATE_VALUE_REPORTING_THRESHOLD_USD must not exceed "
                "GATE_AML_EDD_THRESHOLD_USD"
            )
        if t.aml_edd_usd > t.aml_reporting_usd:
            errors.append(
                "GATE_AML_EDD_THRESHOLD_USD must not exceed "
                "GATE_AML_REPORTING_THRESHOLD_USD"
            )
        if t.expiry_warning_days < 0:
            errors.append(f"GATE_EXPIRY_WARNING_DAYS must be >= 0, got: {t.expiry_warning_days}")
        if t.amount_tolerance < 0:
            errors.append(f"GATE_AMOUNT_TOLERANCE must be >= 0, got: {t.amount_tolerance}")
        if t.min_margin_pct > t.target_margin_pct:
            errors.append("GATE_MIN_MARGIN_PCT must not exceed GATE_TARGET_MARGIN_PCT")
        if not 0 <= t.marginal_credit_score <= 100:
            errors.append(
                f"GATE_MARGINAL_CREDIT_SCORE must be within 0-100, got: {t.marginal_credit_score}"
            )
        if self.ledger_timeout_seconds <= 0:
            errors.append(
                f"LEDGER_SUBMIT_TIMEOUT_SECONDS must be positive, got: {self.ledger_timeout_seconds}"
            )
        for reviewer in self.allowed_reviewers:
            if reviewer.upper() in SYSTEM_ACTORS:
                errors.append(f"GATE_ALLOWED_REVIEWERS must not contain system identity {reviewer}")

        if errors:
            error_msg = "Gate configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{GateErrorCode.CONFIG_MISSING}] {error_msg}")
            raise GateConfigurationError(error_msg)

        logger.info(
            f"[GATE-CONFIG] Configuration validated | "
            f"allowed_reviewers_count={len(self.allowed_reviewers)} | "
            f"chains_configured={[c for c in SUPPORTED_CHAINS if self.has_credentials(c)]} | "
            f"textgen_enabled={bool(self.textgen_url)}"
        )

    @classmethod
    def from_environment(cls, validate: bool = True) -> "GateConfig":
        """
        Load configuration from environment variables (.env honoured).

        Args:
            validate: Whether to validate configuration after loading

        Raises:
            GateConfigurationError: If validation fails (GATE-040)
        """
        load_dotenv()

        defaults = EvaluationThresholds()
        thresholds = EvaluationThresholds(
            aml_edd_usd=_env_decimal("GATE_AML_EDD_THRESHOLD_USD", defaults.aml_edd_usd),
            aml_reporting_usd=_env_decimal(
                "GATE_AML_REPORTING_THRESHOLD_USD", defaults.aml_reporting_usd
            ),
            value_reporting_usd=_env_decimal(
                "GATE_VALUE_REPORTING_THRESHOLD_USD", defaults.value_reporting_usd
            ),
            expiry_warning_days=_env_int("GATE_EXPIRY_WARNING_DAYS", defaults.expiry_warning_days),
            amount_tolerance=_env_decimal("GATE_AMOUNT_TOLERANCE", defaults.amount_tolerance),
            min_margin_pct=_env_decimal("GATE_MIN_MARGIN_PCT", defaults.min_margin_pct),
            target_margin_pct=_env_decimal("GATE_TARGET_MARGIN_PCT", defaults.target_margin_pct),
            high_value_proposal_usd=_env_decimal(
                "GATE_HIGH_VALUE_PROPOSAL_USD", defaults.high_value_proposal_usd
            ),
            marginal_credit_score=_env_int(
                "GATE_MARGINAL_CREDIT_SCORE", defaults.marginal_credit_score
            ),
        )

        reviewers_str = os.environ.get("GATE_ALLOWED_REVIEWERS", "")
        allowed_reviewers: Set[str] = {
            r.strip() for r in reviewers_str.split(",") if r.strip()
        }

        chains = {
            chain: ChainCredentials(
                chain=chain,
                signing_secret=os.environ.get(f"{chain}_SIGNING_SECRET") or None,
                account=os.environ.get(f"{chain}_ANCHOR_ACCOUNT") or None,
                relay_url=os.environ.get(f"{chain}_RELAY_URL") or None,
            )
            for chain in SUPPORTED_CHAINS
        }

        for creds in chains.values():
            if creds.signing_secret and not creds.configured:
                missing = [
                    name for name, value in (
                        (f"{creds.chain}_ANCHOR_ACCOUNT", creds.account),
                        (f"{creds.chain}_RELAY_URL", creds.relay_url),
                    )
                    if not value
                ]
                logger.warning(
                    f"[GATE-CONFIG] {creds.chain} signing secret set but incomplete, "
                    f"anchors stay PENDING | missing={','.join(missing)}"
                )

        try:
            ledger_timeout = float(
                os.environ.get("LEDGER_SUBMIT_TIMEOUT_SECONDS", DEFAULT_LEDGER_TIMEOUT_SECONDS)
            )
        except ValueError:
            logger.warning(
                f"[GATE-CONFIG] Invalid LEDGER_SUBMIT_TIMEOUT_SECONDS, "
                f"using default: {DEFAULT_LEDGER_TIMEOUT_SECONDS}"
            )
            ledger_timeout = DEFAULT_LEDGER_TIMEOUT_SECONDS

        config = cls(
            allowed_reviewers=allowed_reviewers,
            thresholds=thresholds,
            chains=chains,
            ledger_timeout_seconds=ledger_timeout,
            textgen_url=os.environ.get("TEXTGEN_URL") or None,
        )

        logger.info(
            f"[GATE-CONFIG] Loading configuration from environment | "
            f"GATE_ALLOWED_REVIEWERS_COUNT={len(allowed_reviewers)} | "
            f"XRPL_CONFIGURED={config.has_credentials('XRPL')} | "
            f"STELLAR_CONFIGURED={config.has_credentials('STELLAR')} | "
            f"TEXTGEN_URL={config.textgen_url}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Serialisable view. Secrets are reduced to presence flags."""
        t = self.thresholds
        return {
            "allowed_reviewers": sorted(self.allowed_reviewers),
            "thresholds": {
                "aml_edd_usd": str(t.aml_edd_usd),
                "aml_reporting_usd": str(t.aml_reporting_usd),
                "value_reporting_usd": str(t.value_reporting_usd),
                "expiry_warning_days": t.expiry_warning_days,
                "amount_tolerance": str(t.amount_tolerance),
                "min_margin_pct": str(t.min_margin_pct),
                "target_margin_pct": str(t.target_margin_pct),
                "high_value_proposal_usd": str(t.high_value_proposal_usd),
                "marginal_credit_score": t.marginal_credit_score,
            },
            "chains": {c: self.has_credentials(c) for c in SUPPORTED_CHAINS},
            "ledger_timeout_seconds": self.ledger_timeout_seconds,
            "textgen_url": self.textgen_url,
        }


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        logger.warning(f"[GATE-CONFIG] Invalid {name} value: {raw}, using default: {default}")
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"[GATE-CONFIG] Invalid {name} value: {raw}, using default: {default}")
        return default


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[GateConfig] = None


def get_gate_config(validate: bool = True) -> GateConfig:
    """
    Get the global configuration instance, loading it on first access.

    Raises:
        GateConfigurationError: If validation fails (GATE-040)
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = GateConfig.from_environment(validate=validate)

    return _config_instance


def reset_gate_config() -> None:
    """Reset the global configuration instance (tests)."""
    global _config_instance
    _config_instance = None
    logger.debug("[GATE-CONFIG] Configuration instance reset")


__all__ = [
    "GateConfig",
    "GateConfigurationError",
    "ChainCredentials",
    "SUPPORTED_CHAINS",
    "SYSTEM_ACTORS",
    "DEFAULT_LEDGER_TIMEOUT_SECONDS",
    "get_gate_config",
    "reset_gate_config",
]
