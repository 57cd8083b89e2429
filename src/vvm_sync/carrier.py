# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Carrier configuration lookup.

Each account resolves its settings from two bundles: the carrier bundle
pushed for its subscription, and the telephony defaults bundle. A key set
in the carrier bundle wins; missing keys fall back to the defaults.

Example:
    Configuration file format (config.ini)::

        [carrier]
        vvm_type = vvm_type_omtp
        prefetch_enabled = true
        client_prefix = //VVM

        [carrier.sub-1]
        destination_number = 94183567
        ssl_port = 993
        cellular_data_required = true

    Loading::

        provider = CarrierConfigProvider.from_ini("/etc/vvm-sync/config.ini")
        config = provider.get(account)
"""

from __future__ import annotations

import configparser
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import CarrierConfigError
from .logger import get_logger
from .models import VVM_TYPE_CVVM, VVM_TYPE_OMTP, Account

DEFAULT_CLIENT_PREFIX = "//VVM"

CARRIER_SECTION = "carrier"

logger = get_logger("carrier")


def _split_list(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class CarrierConfig(BaseModel):
    """Resolved carrier settings for one account.

    Attributes:
        vvm_type: Visual voicemail protocol flavour; None means unsupported.
        destination_number: Number the activation SMS is sent to.
        application_port: Port for data SMS; 0 for text SMS.
        prefetch_enabled: Download audio as soon as a voicemail is found.
        cellular_data_required: Only sync over the subscription's cellular
            network.
        ssl_port: Port for a direct TLS IMAP connection.
        client_prefix: Prefix of the SMS the activation protocol filters on.
        disabled_capabilities: IMAP capabilities known to misbehave.
        carrier_package_names: Carrier voicemail apps that take precedence.

    The SMS activation side reads ``destination_number``,
    ``application_port`` and ``client_prefix``; the sync engine only
    carries them. ``disabled_capabilities`` is recorded on the mailbox
    session and logged when it opens.
    """

    model_config = ConfigDict(extra="ignore")

    vvm_type: str | None = None
    destination_number: str | None = None
    application_port: Annotated[int, Field(ge=0, le=65535)] = 0
    prefetch_enabled: bool = False
    cellular_data_required: bool = False
    ssl_port: Annotated[int, Field(ge=0, le=65535)] = 0
    client_prefix: str = DEFAULT_CLIENT_PREFIX
    disabled_capabilities: list[str] = Field(default_factory=list)
    carrier_package_names: list[str] = Field(default_factory=list)

    @field_validator("disabled_capabilities", "carrier_package_names", mode="before")
    @classmethod
    def _comma_list(cls, value: Any) -> Any:
        return _split_list(value)

    @property
    def is_valid(self) -> bool:
        """Visual voicemail is supported when the carrier declares a type."""
        return bool(self.vvm_type)

    def is_omtp_type(self) -> bool:
        return self.vvm_type in (VVM_TYPE_OMTP, VVM_TYPE_CVVM)

    def is_enabled_by_default(self, is_package_installed: Callable[[str], bool]) -> bool:
        """Return False when one of the carrier's own voicemail apps is installed."""
        return not any(is_package_installed(name) for name in self.carrier_package_names)


class CarrierConfigProvider:
    """Resolve :class:`CarrierConfig` per account from layered bundles."""

    def __init__(
        self,
        defaults: Mapping[str, Any] | None = None,
        carrier_bundles: Mapping[str, Mapping[str, Any]] | None = None,
    ):
        self._defaults: dict[str, Any] = dict(defaults or {})
        self._bundles: dict[str, dict[str, Any]] = {
            key: dict(bundle) for key, bundle in (carrier_bundles or {}).items()
        }

    @classmethod
    def from_ini(cls, config_path: str | None) -> CarrierConfigProvider:
        """Build a provider from ``[carrier]`` and ``[carrier.<account>]`` sections."""
        if not config_path or not Path(config_path).exists():
            return cls()

        parser = configparser.ConfigParser()
        parser.read(config_path)

        defaults: dict[str, Any] = {}
        bundles: dict[str, dict[str, Any]] = {}
        for section in parser.sections():
            if section == CARRIER_SECTION:
                defaults = dict(parser.items(section))
            elif section.startswith(CARRIER_SECTION + "."):
                account_key = section[len(CARRIER_SECTION) + 1:]
                if not account_key:
                    logger.warning("Ignoring carrier section without account: %s", section)
                    continue
                bundles[account_key] = dict(parser.items(section))

        provider = cls(defaults, bundles)
        # Fail at startup rather than in the middle of a sync
        for account_key in bundles:
            provider.resolve(account_key)
        return provider

    def set_bundle(self, key: str, bundle: Mapping[str, Any]) -> None:
        """Replace the carrier bundle for an account (carrier config changed)."""
        self._bundles[key] = dict(bundle)

    def resolve(self, key: str | None) -> CarrierConfig:
        bundle = self._bundles.get(key or "", {})
        merged: dict[str, Any] = {}
        for name in set(self._defaults) | set(bundle):
            value = bundle.get(name)
            if value is None or value == "":
                value = self._defaults.get(name)
            if value is not None and value != "":
                merged[name] = value
        try:
            return CarrierConfig.model_validate(merged)
        except ValidationError as e:
            raise CarrierConfigError(f"Invalid carrier configuration for {key!r}: {e}") from e

    def get(self, account: Account) -> CarrierConfig:
        """Return the configuration applying to ``account``.

        Bundles are keyed by account id; a bundle keyed by the subscription
        id is used when no account bundle exists.
        """
        key: str | None = account.id
        if key not in self._bundles and account.subscription_id is not None:
            sub_key = str(account.subscription_id)
            if sub_key in self._bundles:
                key = sub_key
        return self.resolve(key)

    def accounts(self) -> Iterable[str]:
        return list(self._bundles)


__all__ = ["CarrierConfig", "CarrierConfigProvider", "DEFAULT_CLIENT_PREFIX"]
