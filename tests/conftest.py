# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared fixtures for the sync engine tests."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from fakes import ACCOUNT_ID, FakeImapServer, ScriptedNetworkProvider, account_payload
from vvm_sync.carrier import CarrierConfigProvider
from vvm_sync.config_loader import SyncConfig
from vvm_sync.imap import MailboxClient
from vvm_sync.network import NetworkAcquirer
from vvm_sync.orchestrator import SyncOrchestrator
from vvm_sync.persistence import Persistence
from vvm_sync.prometheus import SyncMetrics
from vvm_sync.retry import RetryScheduler
from vvm_sync.service import VoicemailSyncService


def fake_mailbox_factory(imap_server):
    def factory(account, handle, carrier_config):
        return MailboxClient(
            account, handle, carrier_config=carrier_config, client_factory=imap_server.client_factory
        )

    return factory


@pytest.fixture
def imap_server():
    return FakeImapServer()


@pytest.fixture
def network():
    return ScriptedNetworkProvider()


@pytest_asyncio.fixture
async def db(tmp_path):
    persistence = Persistence(str(tmp_path / "vvm.db"))
    await persistence.init_db()
    return persistence


@pytest_asyncio.fixture
async def account(db):
    await db.add_account(account_payload())
    return await db.get_account(ACCOUNT_ID)


@pytest_asyncio.fixture
async def make_engine(db, imap_server, network):
    """Build an orchestrator wired to the fake mailbox and network."""
    schedulers = []

    def build(*, carrier: dict | None = None, retry_count: int = 3, timeout: float = 0.05):
        metrics = SyncMetrics()
        retry_callback = AsyncMock()
        scheduler = RetryScheduler(db, retry_callback, metrics=metrics)
        schedulers.append(scheduler)
        carrier_configs = CarrierConfigProvider(defaults=carrier or {"vvm_type": "vvm_type_omtp"})
        activate = AsyncMock()
        acquirer = NetworkAcquirer(network, metrics)

        orchestrator = SyncOrchestrator(
            db,
            db,
            acquirer,
            carrier_configs,
            scheduler,
            activate=activate,
            metrics=metrics,
            network_timeout=timeout,
            network_retry_count=retry_count,
            mailbox_factory=fake_mailbox_factory(imap_server),
            clock=lambda: 1_700_000_000,
        )
        return SimpleNamespace(
            orchestrator=orchestrator,
            scheduler=scheduler,
            retry_callback=retry_callback,
            metrics=metrics,
            activate=activate,
            acquirer=acquirer,
            db=db,
            imap=imap_server,
            network=network,
        )

    yield build

    for scheduler in schedulers:
        await scheduler.close()


@pytest.fixture
def activation_handler():
    return AsyncMock()


@pytest_asyncio.fixture
async def service(tmp_path, imap_server, network, activation_handler):
    """A started VoicemailSyncService over the fake mailbox and network."""
    svc = VoicemailSyncService(
        config=SyncConfig(
            db_path=str(tmp_path / "service.db"),
            network_timeout_seconds=0.05,
            network_retry_count=2,
        ),
        network_provider=network,
        carrier_configs=CarrierConfigProvider(defaults={"vvm_type": "vvm_type_omtp"}),
        activation_handler=activation_handler,
        mailbox_factory=fake_mailbox_factory(imap_server),
    )
    await svc.start()
    yield svc
    await svc.stop()
