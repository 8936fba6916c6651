"""
auth/delivery.py -- Out-of-band delivery of verification codes.

The core generates and checks codes but never sends them. AuthService hands
each fresh code to a CodeSender; production deployments plug in a mail
transport, development uses LoggingCodeSender.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("membergate.auth.delivery")


class CodeSender(Protocol):
    def send(self, email: str, code: str, valid_seconds: int) -> None: ...


class LoggingCodeSender:
    """Writes the code to the log instead of sending mail.

    reveal_code=True is for local development only: the code appears in the
    log so a developer can complete sign-up without a mail server.
    """

    def __init__(self, reveal_code: bool = False) -> None:
        self.reveal_code = reveal_code

    def send(self, email: str, code: str, valid_seconds: int) -> None:
        if self.reveal_code:
            logger.info("Verification code for %s: %s (valid %ds)", email, code, valid_seconds)
        else:
            logger.info("Verification code generated for %s (valid %ds); no mail transport configured", email, valid_seconds)
