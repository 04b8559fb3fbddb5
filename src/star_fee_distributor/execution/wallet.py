"""Identity of the account that submits crank pages."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..config.settings import WalletConfig, get_app_config
from ..monitoring.logger import get_logger


class WalletConfigurationError(ValueError):
    """Raised when no usable crank-caller identity is configured."""


def _keypair_from_file(path: Path) -> Keypair:
    with path.expanduser().open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, list):
        raise WalletConfigurationError(f"Keypair file {path} must hold a JSON byte array")
    return Keypair.from_bytes(bytes(data))


def load_crank_caller(config: Optional[WalletConfig] = None) -> Pubkey:
    """Resolve the crank caller from a base58 secret, a keypair file or a public key.

    The caller is recorded on every payout and page event the crank
    produces. When both key material and ``public_key`` are configured they
    must agree.
    """

    cfg = config or get_app_config().wallet
    logger = get_logger(__name__)
    keypair: Optional[Keypair] = None
    if cfg.private_key:
        keypair = Keypair.from_bytes(base58.b58decode(cfg.private_key))
    elif cfg.keypair_path:
        keypair = _keypair_from_file(Path(cfg.keypair_path))
    elif cfg.public_key:
        logger.info("Using watch-only crank caller %s", cfg.public_key)
        return Pubkey.from_string(cfg.public_key)
    elif cfg.allow_test_keypair:
        keypair = Keypair()
        logger.warning("Generated throwaway crank caller %s", keypair.pubkey())
    if keypair is None:
        raise WalletConfigurationError(
            "No crank caller configured; set WALLET__PRIVATE_KEY, WALLET__KEYPAIR_PATH or WALLET__PUBLIC_KEY"
        )
    if cfg.public_key and Pubkey.from_string(cfg.public_key) != keypair.pubkey():
        raise WalletConfigurationError("Configured public_key does not match the loaded keypair")
    return keypair.pubkey()


__all__ = ["WalletConfigurationError", "load_crank_caller"]
