"""
In-process holder for the remote API key and its health.

Health moves between four states:

    unset     no key stored
    checking  a key was just stored, or is being re-validated
    valid     the provider accepted the key (or it came from configuration
              and has not been rejected yet)
    invalid   the provider rejected the key

A network failure while validating does not mark the key invalid; only an
explicit rejection does.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Dict, Optional

from studyspace.config import settings
from studyspace.services.errors import GenerationError
from studyspace.services.openai_backend import KeyValidation, OpenAIBackend

logger = logging.getLogger(__name__)

Validator = Callable[[str], Awaitable[KeyValidation]]


class CredentialHealth(str, enum.Enum):
    UNSET = "unset"
    CHECKING = "checking"
    VALID = "valid"
    INVALID = "invalid"


def _default_validator(key: str) -> Awaitable[KeyValidation]:
    return OpenAIBackend(key_provider=lambda: None).validate_key(key)


class CredentialHealthMonitor:
    def __init__(self, key: Optional[str] = None, validator: Optional[Validator] = None):
        self._key: Optional[str] = (key or "").strip() or None
        # A configured key is trusted until a check says otherwise.
        self._status = CredentialHealth.VALID if self._key else CredentialHealth.UNSET
        self._last_error: Optional[str] = None
        self._validator: Validator = validator or _default_validator
        self._check_task: Optional[asyncio.Task] = None
        self._check_key: Optional[str] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> CredentialHealth:
        return self._status

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def has_key(self) -> bool:
        return self._key is not None

    def get_key(self) -> Optional[str]:
        return self._key

    def snapshot(self) -> Dict[str, object]:
        return {
            "status": self._status.value,
            "has_key": self.has_key,
            "last_error": self._last_error,
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def set_key(self, key: Optional[str]) -> CredentialHealth:
        """Store a new key; blank input is ignored."""
        key = (key or "").strip()
        if not key:
            logger.info("Ignoring blank API key")
            return self._status
        self._key = key
        self._status = CredentialHealth.CHECKING
        self._last_error = None
        logger.info("API key stored; status=checking")
        return self._status

    def clear_key(self) -> None:
        self._key = None
        self._status = CredentialHealth.UNSET
        self._last_error = None
        logger.info("API key cleared")

    def mark_invalid(self, message: Optional[str] = None) -> None:
        if self._key is None:
            return
        self._status = CredentialHealth.INVALID
        self._last_error = message or "OpenAI API key was rejected."
        logger.warning("API key marked invalid: %s", self._last_error)

    async def check(self) -> CredentialHealth:
        """Validate the stored key against the provider."""
        key = self._key
        if key is None:
            self._status = CredentialHealth.UNSET
            return self._status

        self._status = CredentialHealth.CHECKING
        try:
            result = await self._validator(key)
        except GenerationError as e:
            if self._key == key:
                self._status = CredentialHealth.VALID
                self._last_error = e.message
            logger.warning("API key check could not complete: %s", e.message)
            return self._status

        if self._key != key:
            # The key was replaced or cleared while this check ran.
            return self._status

        if result.valid:
            self._status = CredentialHealth.VALID
            self._last_error = None
        else:
            self._status = CredentialHealth.INVALID
            self._last_error = result.message
        logger.info("API key check finished: status=%s", self._status.value)
        return self._status

    def start_background_check(self) -> Optional[asyncio.Task]:
        """Schedule ``check()`` on the running loop; None when there is no key."""
        if self._key is None:
            return None
        running = self._check_task is not None and not self._check_task.done()
        if running and self._check_key == self._key:
            return self._check_task
        # A check of a replaced key finishes without touching the status
        self._check_key = self._key
        self._check_task = asyncio.create_task(self.check())
        self._check_task.add_done_callback(self._on_check_done)
        return self._check_task

    @staticmethod
    def _on_check_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background API key check crashed: %s", exc, exc_info=exc)


# Process-wide instance
credential_monitor = CredentialHealthMonitor(key=settings.OPENAI_API_KEY)
