# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Network acquisition for mailbox access.

The platform reports network state through three callbacks (available,
unavailable, lost). This module collapses them into one awaited call that
returns either a scoped :class:`NetworkHandle` or a typed
:class:`NetworkFailure`, so the orchestrator has a single control path for
every outcome.

Example:
    Acquiring the subscription's cellular network::

        acquirer = NetworkAcquirer(provider)
        constraints = NetworkAcquirer.constraints_for(account, carrier_config)
        result = await acquirer.acquire(account, constraints, timeout=60)
        if isinstance(result, NetworkFailure):
            ...  # retry path
        else:
            async with result as handle:
                ...  # handle released on every exit path
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .carrier import CarrierConfig
    from .models import Account
    from .prometheus import SyncMetrics

logger = logging.getLogger(__name__)

TRANSPORT_CELLULAR = "cellular"
CAPABILITY_INTERNET = "internet"


class NetworkFailureReason(str, Enum):
    UNAVAILABLE = "unavailable"
    LOST = "lost"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class NetworkFailure:
    """Terminal failure of a network request."""

    reason: NetworkFailureReason
    detail: str | None = None


@dataclass(frozen=True)
class NetworkConstraints:
    """What the requested network must provide.

    Attributes:
        specifier: Binds the request to one subscriber's transport instance
            (the subscription id) rather than any network with the
            capabilities.
        transport: Required transport type; None accepts any.
        capabilities: Capabilities the network must offer.
    """

    specifier: str | None = None
    transport: str | None = TRANSPORT_CELLULAR
    capabilities: frozenset[str] = field(default_factory=lambda: frozenset({CAPABILITY_INTERNET}))


@dataclass(frozen=True)
class Network:
    """A platform network object handed over by the provider."""

    name: str
    transport: str | None = None
    roaming: bool = False
    host: str | None = None


class NetworkProvider(Protocol):
    """Platform side of network reservation.

    ``request`` must eventually invoke exactly one of
    ``callback.on_available`` / ``callback.on_unavailable``;
    ``callback.on_lost`` may follow ``on_available``. ``release`` drops the
    reservation and must accept callbacks that never became available.
    """

    def request(self, constraints: NetworkConstraints, callback: NetworkRequestCallback, timeout: float) -> None:
        ...

    def release(self, callback: NetworkRequestCallback) -> None:
        ...


class NetworkRequestCallback:
    """Receives platform callbacks for one request and resolves one future.

    Callbacks may arrive from any thread; they are marshalled onto the
    event loop that created the request. The first terminal callback wins
    and later ones are ignored.
    """

    def __init__(self, account_id: str, loop: asyncio.AbstractEventLoop | None = None):
        self.account_id = account_id
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future[Network | NetworkFailure] = self._loop.create_future()
        self._network: Network | None = None
        self.lost = False

    def on_available(self, network: Network) -> None:
        self._loop.call_soon_threadsafe(self._available, network)

    def on_unavailable(self) -> None:
        self._loop.call_soon_threadsafe(self._failed, NetworkFailure(NetworkFailureReason.UNAVAILABLE))

    def on_lost(self, network: Network | None = None) -> None:
        self._loop.call_soon_threadsafe(self._lost, network)

    def _available(self, network: Network) -> None:
        if self._future.done():
            logger.debug("Ignoring late availability for %s", self.account_id)
            return
        self._network = network
        self._future.set_result(network)

    def _failed(self, failure: NetworkFailure) -> None:
        if not self._future.done():
            self._future.set_result(failure)

    def _lost(self, network: Network | None) -> None:
        if not self._future.done():
            self._future.set_result(NetworkFailure(NetworkFailureReason.LOST))
            return
        if self._network is not None:
            logger.info("Network lost while held for %s", self.account_id)
            self.lost = True

    async def wait(self) -> Network | NetworkFailure:
        # shield: a wait_for timeout must not leave the future cancelled
        # before the acquirer has released the reservation
        return await asyncio.shield(self._future)


class NetworkHandle:
    """Exclusive, scoped use of an acquired network.

    Use as an async context manager; ``release()`` is idempotent and is
    called on every exit path of the ``async with`` block.
    """

    def __init__(self, acquirer: NetworkAcquirer, callback: NetworkRequestCallback, network: Network):
        self._acquirer = acquirer
        self._callback = callback
        self.network = network
        self.released = False

    @property
    def account_id(self) -> str:
        return self._callback.account_id

    @property
    def transport(self) -> str | None:
        return self.network.transport

    @property
    def roaming(self) -> bool:
        return self.network.roaming

    @property
    def lost(self) -> bool:
        """True once the platform reported the network gone while held."""
        return self._callback.lost

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._acquirer._release(self._callback)

    async def __aenter__(self) -> NetworkHandle:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class NetworkAcquirer:
    """Request a constrained network and wait for its terminal outcome."""

    def __init__(self, provider: NetworkProvider, metrics: SyncMetrics | None = None):
        self._provider = provider
        self._metrics = metrics
        self._outstanding: set[NetworkRequestCallback] = set()

    @property
    def outstanding(self) -> int:
        """Number of reservations not yet released."""
        return len(self._outstanding)

    @staticmethod
    def constraints_for(account: Account, carrier_config: CarrierConfig | None = None) -> NetworkConstraints:
        """Build the request constraints for ``account``.

        The request is always bound to the account's subscription; the
        cellular transport is only demanded when the carrier requires it.
        """
        specifier = str(account.subscription_id) if account.subscription_id is not None else None
        cellular = carrier_config is None or carrier_config.cellular_data_required
        return NetworkConstraints(
            specifier=specifier,
            transport=TRANSPORT_CELLULAR if cellular else None,
        )

    async def acquire(
        self,
        account: Account,
        constraints: NetworkConstraints,
        timeout: float,
    ) -> NetworkHandle | NetworkFailure:
        """Request a network and wait until it is available, or fails.

        Never raises for network conditions. On failure the reservation has
        already been released; on success the caller owns the handle.
        """
        callback = NetworkRequestCallback(account.id)
        self._outstanding.add(callback)

        try:
            self._provider.request(constraints, callback, timeout)
        except Exception as e:
            logger.warning("Network request failed for %s: %s", account.id, e)
            self._release(callback)
            return self._failure(account, NetworkFailure(NetworkFailureReason.UNAVAILABLE, str(e)))

        try:
            outcome = await asyncio.wait_for(callback.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self._release(callback)
            return self._failure(account, NetworkFailure(NetworkFailureReason.TIMEOUT))
        except asyncio.CancelledError:
            self._release(callback)
            raise

        if isinstance(outcome, NetworkFailure):
            self._release(callback)
            return self._failure(account, outcome)

        logger.debug("Network %s available for %s", outcome.name, account.id)
        return NetworkHandle(self, callback, outcome)

    def _failure(self, account: Account, failure: NetworkFailure) -> NetworkFailure:
        logger.info("Network %s for %s", failure.reason.value, account.id)
        if self._metrics:
            self._metrics.inc_network_failure(account.id, failure.reason.value)
        return failure

    def _release(self, callback: NetworkRequestCallback) -> None:
        if callback not in self._outstanding:
            return
        self._outstanding.discard(callback)
        try:
            self._provider.release(callback)
        except Exception as e:
            logger.warning("Releasing network for %s failed: %s", callback.account_id, e)


class DirectNetworkProvider:
    """Provider for hosts where the default route is always usable."""

    def __init__(self, name: str = "default", roaming: bool = False):
        self._network = Network(name=name, transport=None, roaming=roaming)

    def request(self, constraints: NetworkConstraints, callback: NetworkRequestCallback, timeout: float) -> None:
        callback.on_available(self._network)

    def release(self, callback: NetworkRequestCallback) -> None:
        pass


__all__ = [
    "CAPABILITY_INTERNET",
    "DirectNetworkProvider",
    "Network",
    "NetworkAcquirer",
    "NetworkConstraints",
    "NetworkFailure",
    "NetworkFailureReason",
    "NetworkHandle",
    "NetworkProvider",
    "NetworkRequestCallback",
    "TRANSPORT_CELLULAR",
]
