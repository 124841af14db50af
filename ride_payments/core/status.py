"""
Provider status vocabulary mapping.

Each provider reports outcomes in its own words (Orange even ships a
misspelled "SUCCESSFULL"). These pure functions fold them into the
canonical TransactionStatus values:
- Known success tokens map to COMPLETED
- Known failure tokens map to FAILED
- Known in-flight tokens and anything unrecognised map to PROCESSING

The same module decides whether a failed payout is worth resubmitting.
"""
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional

from ride_payments.core.enums import Provider, TransactionStatus


@dataclass(frozen=True)
class ProviderVocabulary:
    """Status tokens a provider is known to emit, grouped by canonical outcome."""

    completed: FrozenSet[str] = field(default_factory=frozenset)
    failed: FrozenSet[str] = field(default_factory=frozenset)
    processing: FrozenSet[str] = field(default_factory=frozenset)

    def extended(self, extra: Mapping[str, List[str]]) -> "ProviderVocabulary":
        """
        Return a copy with additional tokens merged in.

        Args:
            extra: Mapping of canonical status name to extra provider tokens

        Returns:
            ProviderVocabulary: Merged vocabulary
        """

        def merge(current: FrozenSet[str], key: str) -> FrozenSet[str]:
            return current | frozenset(t.strip().upper() for t in extra.get(key, []))

        return ProviderVocabulary(
            completed=merge(self.completed, TransactionStatus.COMPLETED.value),
            failed=merge(self.failed, TransactionStatus.FAILED.value),
            processing=merge(self.processing, TransactionStatus.PROCESSING.value),
        )


MTN_VOCABULARY = ProviderVocabulary(
    completed=frozenset({"SUCCESSFUL", "SUCCESS"}),
    failed=frozenset({"FAILED", "REJECTED", "EXPIRED", "TIMEOUT"}),
    processing=frozenset({"PENDING", "ONGOING", "DELAYED", "CREATED"}),
)

ORANGE_VOCABULARY = ProviderVocabulary(
    completed=frozenset({"SUCCESSFULL", "SUCCESSFUL", "SUCCESS"}),
    failed=frozenset({"FAILED", "FAIL", "CANCELLED", "EXPIRED"}),
    processing=frozenset({"PENDING", "INITIATED"}),
)

PAWAPAY_VOCABULARY = ProviderVocabulary(
    completed=frozenset({"COMPLETED", "SUCCESSFUL"}),
    failed=frozenset({"FAILED", "FAILURE", "REJECTED"}),
    processing=frozenset({"ACCEPTED", "SUBMITTED", "PROCESSING", "ENQUEUED", "PENDING"}),
)

DEFAULT_VOCABULARIES: Dict[Provider, ProviderVocabulary] = {
    Provider.MTN: MTN_VOCABULARY,
    Provider.ORANGE: ORANGE_VOCABULARY,
    Provider.PAWAPAY: PAWAPAY_VOCABULARY,
}

# Substrings of a provider status or failure reason that mean "try again later"
RETRYABLE_MARKERS = (
    "PENDING",
    "ONGOING",
    "DELAYED",
    "SERVICE_UNAVAILABLE",
    "UNAVAILABLE",
    "INTERNAL_PROCESSING_ERROR",
    "INTERNAL_ERROR",
    "TEMPORARY",
    "TEMPORARILY",
    "TIMEOUT",
    "TIMED_OUT",
    "NETWORK",
    "TRY_AGAIN",
)

# Substrings that mean resubmitting cannot succeed
PERMANENT_MARKERS = (
    "NOT_ENOUGH_FUNDS",
    "INSUFFICIENT",
    "PAYEE_NOT_ALLOWED_TO_RECEIVE",
    "PAYER_NOT_ALLOWED",
    "NOT_ALLOWED",
    "INVALID",
    "ACCOUNT_NOT_FOUND",
    "ACCOUNT_HOLDER_NOT_FOUND",
    "ZERO_BALANCE",
    "NEGATIVE_BALANCE",
    "RESOURCE_NOT_FOUND",
    "BLOCKED",
)


def normalize_token(value: Optional[str]) -> str:
    """
    Case- and separator-normalise a provider token.

    "temporary network failure" becomes "TEMPORARY_NETWORK_FAILURE".
    """
    if not value:
        return ""
    return re.sub(r"[\s\-]+", "_", str(value).strip()).upper()


def build_vocabularies(
    overrides: Optional[Mapping[str, Mapping[str, List[str]]]] = None,
) -> Dict[Provider, ProviderVocabulary]:
    """
    Merge configured extra tokens over the built-in vocabularies.

    Args:
        overrides: ``{provider: {canonical_status: [tokens]}}``

    Returns:
        Dict[Provider, ProviderVocabulary]: Vocabulary per provider
    """
    vocabularies = dict(DEFAULT_VOCABULARIES)
    for provider_name, extra in (overrides or {}).items():
        provider = Provider(provider_name.lower())
        vocabularies[provider] = vocabularies[provider].extended(extra)
    return vocabularies


def _map(raw_status: Optional[str], vocabulary: ProviderVocabulary) -> TransactionStatus:
    token = normalize_token(raw_status)
    if token in vocabulary.completed:
        return TransactionStatus.COMPLETED
    if token in vocabulary.failed:
        return TransactionStatus.FAILED
    # Known in-flight tokens and anything unrecognised alike
    return TransactionStatus.PROCESSING


def map_mtn_status(
    raw_status: Optional[str], vocabulary: ProviderVocabulary = MTN_VOCABULARY
) -> TransactionStatus:
    """Map an MTN MoMo status to the canonical vocabulary."""
    return _map(raw_status, vocabulary)


def map_orange_status(
    raw_status: Optional[str], vocabulary: ProviderVocabulary = ORANGE_VOCABULARY
) -> TransactionStatus:
    """Map an Orange Money status to the canonical vocabulary."""
    return _map(raw_status, vocabulary)


def map_pawapay_status(
    raw_status: Optional[str], vocabulary: ProviderVocabulary = PAWAPAY_VOCABULARY
) -> TransactionStatus:
    """Map a pawaPay status to the canonical vocabulary."""
    return _map(raw_status, vocabulary)


_MAPPERS = {
    Provider.MTN: map_mtn_status,
    Provider.ORANGE: map_orange_status,
    Provider.PAWAPAY: map_pawapay_status,
}


def map_provider_status(
    provider: Provider | str,
    raw_status: Optional[str],
    vocabularies: Optional[Mapping[Provider, ProviderVocabulary]] = None,
) -> TransactionStatus:
    """
    Map any provider's native status to the canonical vocabulary.

    Args:
        provider: Provider that reported the status
        raw_status: Provider-native status string
        vocabularies: Optional vocabularies (defaults to the built-in ones)

    Returns:
        TransactionStatus: COMPLETED, FAILED or PROCESSING
    """
    provider = Provider(provider)
    vocabulary = (vocabularies or DEFAULT_VOCABULARIES)[provider]
    return _MAPPERS[provider](raw_status, vocabulary)


def is_retryable_failure(provider_status: Optional[str], reason: Optional[str]) -> bool:
    """
    Decide whether a failed payout should be resubmitted.

    The failure reason is more specific than the status, so it is checked
    first: a permanent reason wins over everything, a transient reason makes
    the failure retryable. Without a telling reason, only in-flight or
    service-side statuses are retryable; a bare FAILED is not.

    Args:
        provider_status: Provider-native status
        reason: Provider failure reason or message

    Returns:
        bool: True if a retry may succeed
    """
    reason_token = normalize_token(reason)
    status_token = normalize_token(provider_status)

    if reason_token:
        if any(marker in reason_token for marker in PERMANENT_MARKERS):
            return False
        if any(marker in reason_token for marker in RETRYABLE_MARKERS):
            return True

    if any(marker in status_token for marker in PERMANENT_MARKERS):
        return False
    return any(marker == status_token for marker in RETRYABLE_MARKERS)


def sanitize_reason(reason: Optional[str]) -> Optional[str]:
    """
    Reduce a provider message to plain ASCII words.

    Provider messages sometimes arrive with accents or stray symbols that
    break downstream consumers.
    """
    if reason is None:
        return None
    decomposed = unicodedata.normalize("NFD", str(reason))
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    words = re.sub(r"[^A-Za-z0-9_]+", " ", ascii_only)
    return re.sub(r"\s+", " ", words).strip()
