"""Error taxonomy shared by the remediation pipeline."""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, TypeVar

if TYPE_CHECKING:
    from autofix.models import AnalysisResult, ProviderAttempt

logger = logging.getLogger("autofix.errors")

T = TypeVar("T")


class AutofixError(Exception):
    """Base class for all pipeline errors."""


class TransientFetchError(AutofixError):
    """Network, timeout or rate-limit failure talking to a collaborator. Safe to retry."""


class NotFound(AutofixError):
    """The requested run, file or ref does not exist. Never retried."""


class PermissionDenied(AutofixError):
    """Credentials lack access to the repository. Never retried."""


class PublishConflict(AutofixError):
    """Branch already exists or the target moved while publishing."""


class ProviderError(AutofixError):
    """A language-model backend failed to return a usable response."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderTimeout(ProviderError):
    """A backend did not answer within its wall-clock budget."""


class UnparsablePatch(AutofixError):
    """A backend response could not be turned into an applicable set of edits."""


class AllProvidersExhausted(AutofixError):
    """Every configured backend hit its attempt cap without producing a candidate."""

    def __init__(
        self,
        message: str,
        attempts: list[ProviderAttempt] | None = None,
        analyses: list[AnalysisResult] | None = None,
    ):
        super().__init__(message)
        self.attempts = list(attempts or [])
        self.analyses = list(analyses or [])


class SandboxError(AutofixError):
    """The sandbox runtime could not provide or operate a workspace."""


class RunCancelled(AutofixError):
    """Raised at a suspension point once the run's cancel event is set."""


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise RunCancelled("cancelled")


def wait_or_cancel(cancel: threading.Event | None, seconds: float) -> None:
    """Sleep for a backoff interval, waking early (and raising) if the run is cancelled."""
    if seconds <= 0:
        check_cancelled(cancel)
        return
    if cancel is None:
        time.sleep(seconds)
    elif cancel.wait(seconds):
        raise RunCancelled("cancelled")


def retry_transient(
    fn: Callable[[], T],
    what: str,
    cancel: threading.Event | None = None,
    max_attempts: int = 5,
    backoff_base: float = 1.0,
    backoff_factor: float = 2.0,
) -> T:
    """Call ``fn``, retrying TransientFetchError with exponential cancellable backoff.

    Any other error propagates at once. The last TransientFetchError is re-raised
    once ``max_attempts`` calls have failed.
    """
    max_attempts = max(1, max_attempts)
    delay = backoff_base
    for attempt in range(1, max_attempts + 1):
        check_cancelled(cancel)
        try:
            return fn()
        except TransientFetchError as e:
            if attempt >= max_attempts:
                logger.error(f"{what} failed after {attempt} attempts: {e}")
                raise
            logger.warning(f"{what} attempt {attempt}/{max_attempts} failed ({e}); retrying in {delay:.1f}s")
            wait_or_cancel(cancel, delay)
            delay *= backoff_factor
    raise AssertionError("unreachable")
