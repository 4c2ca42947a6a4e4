"""
Captcha challenge/solution types and solver strategies.

The portal captcha is an image a human has to read. The scraping engine
only depends on the ``CaptchaSolver`` protocol; how the answer is produced
(terminal prompt, callback, the job API mailbox) is up to the solver.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from nfce.errors import NoCaptchaSolverError

logger = logging.getLogger(__name__)


@dataclass
class CaptchaChallenge:
    """One captcha image. Good for exactly one submission attempt."""
    id: str
    image: bytes
    content_type: str = "image/png"


@dataclass
class CaptchaSolution:
    text: str
    challenge_id: str = ""


class CaptchaSolver(Protocol):
    async def solve(self, challenge: CaptchaChallenge) -> CaptchaSolution:
        ...


PromptFunc = Callable[[CaptchaChallenge], Awaitable[str]]


class ManualSolver:
    """Ask a human through ``prompt`` (e.g. save the image, read stdin)."""

    def __init__(self, prompt: PromptFunc | None = None):
        self._prompt = prompt

    async def solve(self, challenge: CaptchaChallenge) -> CaptchaSolution:
        if self._prompt is None:
            raise NoCaptchaSolverError("no captcha prompt configured")

        text = (await self._prompt(challenge)).strip()
        logger.info("Manual captcha answer received for challenge %s", challenge.id)
        return CaptchaSolution(text=text, challenge_id=challenge.id)


class CallbackSolver:
    """Wrap a plain (sync) callback returning the answer text."""

    def __init__(self, callback: Callable[[CaptchaChallenge], str] | None = None):
        self._callback = callback

    async def solve(self, challenge: CaptchaChallenge) -> CaptchaSolution:
        if self._callback is None:
            raise NoCaptchaSolverError("no captcha callback configured")
        return CaptchaSolution(text=self._callback(challenge), challenge_id=challenge.id)
