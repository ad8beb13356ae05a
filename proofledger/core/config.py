# proofledger/core/config.py
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

DEFAULT_IPFS_GATEWAY = "https://gateway.lighthouse.storage/ipfs"


def _strip_slash(url: str) -> str:
    return url.strip().rstrip("/")


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip() == "1"


@dataclass(frozen=True)
class Settings:
    """Runtime configuration. Secrets are never read here."""
    ipfs_gateway: str = DEFAULT_IPFS_GATEWAY
    extra_gateways: Tuple[str, ...] = field(default_factory=tuple)
    strict_verify: bool = False
    debug: bool = False
    susd_code: str = ""
    susd_issuer: str = ""

    @property
    def susd_asset(self) -> Optional[Tuple[str, str]]:
        if not self.susd_code or not self.susd_issuer:
            return None
        return self.susd_code, self.susd_issuer


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Resolve settings from the environment.

    Gateway resolution order:
    1. PROOFLEDGER_IPFS_GATEWAY
    2. IPFS_GATEWAY
    3. Default: gateway.lighthouse.storage
    """
    env = os.environ if environ is None else environ

    gateway = (env.get("PROOFLEDGER_IPFS_GATEWAY") or env.get("IPFS_GATEWAY") or "").strip()
    extras = tuple(
        _strip_slash(part)
        for part in (env.get("PROOFLEDGER_IPFS_GATEWAYS") or "").split(",")
        if part.strip()
    )

    return Settings(
        ipfs_gateway=_strip_slash(gateway) if gateway else DEFAULT_IPFS_GATEWAY,
        extra_gateways=extras,
        strict_verify=_flag(env.get("PROOFLEDGER_STRICT_VERIFY")),
        debug=_flag(env.get("PROOFLEDGER_DEBUG")),
        susd_code=(env.get("PROOFLEDGER_SUSD_CODE") or "").strip(),
        susd_issuer=(env.get("PROOFLEDGER_SUSD_ISSUER") or "").strip(),
    )
