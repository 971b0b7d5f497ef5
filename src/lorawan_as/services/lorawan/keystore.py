"""Device root keys and join replay state.

Callers hold the per-device lock and wrap a join in one
:meth:`SQLitePersistence.transaction` so that the nonce bookkeeping and the
activation it produces commit together.
"""
from __future__ import annotations

import logging

from .enums import ErrorKind
from .errors import LoRaWANError
from .models import DeviceKeys
from .ports import KeysRepo

__all__ = ["MAX_JOIN_NONCE", "DEFAULT_DEV_NONCE_WINDOW", "DeviceKeysStore"]

logger = logging.getLogger(__name__)

MAX_JOIN_NONCE = (1 << 24) - 1
DEFAULT_DEV_NONCE_WINDOW = 4096


class DeviceKeysStore:
    def __init__(self, repo: KeysRepo, *, window: int = DEFAULT_DEV_NONCE_WINDOW, strict: bool = False) -> None:
        if window < 1:
            raise ValueError("dev-nonce window must be positive")
        self._repo = repo
        self._window = window
        self._strict = strict

    @property
    def window(self) -> int:
        return self._window

    def load(self, dev_eui: bytes) -> DeviceKeys:
        return self._repo.load(dev_eui)

    def check_dev_nonce(self, dev_eui: bytes, join_eui: bytes, dev_nonce: int, *, lorawan_11: bool = False) -> None:
        """Fail with ``DevNonceReused`` if the nonce is in the recent set.

        With the strict policy enabled, LoRaWAN 1.1 devices (whose nonces are
        counters) also fail for values not above the largest one seen.
        """

        if self._repo.has_dev_nonce(dev_eui, join_eui, dev_nonce):
            raise LoRaWANError(ErrorKind.DEV_NONCE_REUSED, f"dev-nonce {dev_nonce} has already been used")
        if self._strict and lorawan_11:
            highest = self._repo.max_dev_nonce(dev_eui, join_eui)
            if highest is not None and dev_nonce <= highest:
                raise LoRaWANError(
                    ErrorKind.DEV_NONCE_REUSED,
                    f"dev-nonce {dev_nonce} is not greater than the last seen dev-nonce {highest}",
                )

    def consume_dev_nonce(self, dev_eui: bytes, join_eui: bytes, dev_nonce: int) -> None:
        self._repo.add_dev_nonce(dev_eui, join_eui, dev_nonce, keep=self._window)

    def check_and_consume_dev_nonce(
        self,
        dev_eui: bytes,
        join_eui: bytes,
        dev_nonce: int,
        *,
        lorawan_11: bool = False,
    ) -> None:
        self.check_dev_nonce(dev_eui, join_eui, dev_nonce, lorawan_11=lorawan_11)
        self.consume_dev_nonce(dev_eui, join_eui, dev_nonce)

    def next_join_nonce(self, keys: DeviceKeys) -> int:
        """Advance the join-nonce and return the value the accept must carry."""

        if keys.join_nonce >= MAX_JOIN_NONCE:
            logger.warning("join-nonce exhausted", extra={"extra": {"dev_eui": keys.dev_eui.hex()}})
            raise LoRaWANError(ErrorKind.JOIN_NONCE_EXHAUSTED, "24-bit join-nonce exhausted")
        keys.join_nonce += 1
        self._repo.update_nonces(keys.dev_eui, join_nonce=keys.join_nonce)
        return keys.join_nonce
