"""
Error taxonomy shared by the scraper, the parsers and the job API.

Every error carries a stable ``code`` (used in job records and logs) and a
``retryable`` flag. Only a rejected captcha is retryable: the engine turns it
into a fresh session + challenge instead of failing the run.
"""

from __future__ import annotations


class NFCeError(Exception):
    """Base exception for NFC-e portal errors."""

    code = "NFCE_ERROR"
    retryable = False


class InvalidAccessKeyError(NFCeError):
    """Access key failed format or check-digit validation."""

    code = "INVALID_ACCESS_KEY"


class NoCaptchaSolverError(NFCeError):
    """The engine needs a captcha answer but has no solver."""

    code = "NO_CAPTCHA_SOLVER"


class CaptchaInvalidError(NFCeError):
    """Portal rejected the captcha answer."""

    code = "CAPTCHA_INVALID"
    retryable = True


class InvoiceNotFoundError(NFCeError):
    """Portal has no invoice for this access key."""

    code = "INVOICE_NOT_FOUND"


class SessionExpiredError(NFCeError):
    """Server-side session expired between postbacks."""

    code = "SESSION_EXPIRED"


class UnexpectedResponseError(NFCeError):
    """Portal answered with a server-side fault page."""

    code = "UNEXPECTED_RESPONSE"


class StructureNotFoundError(NFCeError):
    """A required page anchor is missing from the markup."""

    code = "STRUCTURE_NOT_FOUND"


class FormStateError(NFCeError):
    """Hidden postback tokens could not be read, or are not usable."""

    code = "FORM_STATE"


class UnsupportedPortalError(NFCeError):
    """No parser registered for the requested portal."""

    code = "UNSUPPORTED_PORTAL"


class ScrapeStepError(NFCeError):
    """Transport or decode failure, tagged with the protocol step."""

    code = "SCRAPE_STEP"

    def __init__(self, step: str, message: str, cause: BaseException | None = None):
        self.step = step
        self.message = message
        self.cause = cause
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.step}: {self.message}: {self.cause}"
        return f"{self.step}: {self.message}"


class ScrapeTimeoutError(NFCeError):
    """Deadline exceeded or run cancelled."""

    code = "TIMEOUT"


# ---------------------------------------------------------------------------
# Job orchestration
# ---------------------------------------------------------------------------

class JobNotWaitingError(NFCeError):
    """Captcha submitted to a job that is not waiting for one."""

    code = "JOB_NOT_WAITING"


class CaptchaHandoffError(NFCeError):
    """Job is marked as waiting but no task is parked on the mailbox."""

    code = "CAPTCHA_HANDOFF_FAILED"
