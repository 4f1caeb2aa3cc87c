from __future__ import annotations

import asyncio
import re
from typing import Callable, Mapping, Sequence

from .cache import TTLCache, is_missing
from .config import DEFAULT_ENS_RPC_URLS


_ETH_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
NAME_CACHE_TTL_S = 6 * 60 * 60

EnsLookup = Callable[[str, Sequence[str]], str | None]


def looks_like_eth_address(value: str) -> bool:
    return bool(_ETH_ADDRESS_RE.match((value or "").strip()))


def short_identity(value: str) -> str:
    cleaned = (value or "").strip()
    if len(cleaned) <= 12:
        return cleaned
    return f"{cleaned[:6]}…{cleaned[-4:]}"


def reverse_ens_lookup(address: str, rpc_urls: Sequence[str]) -> str | None:
    """Primary ENS name for `address`, trying each RPC endpoint in turn."""

    from web3 import Web3

    last_error: Exception | None = None
    for rpc_url in rpc_urls:
        try:
            web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 10}))
            if not web3.is_connected():
                last_error = RuntimeError(f"Unable to reach ENS RPC at {rpc_url}")
                continue
            name = web3.ens.name(Web3.to_checksum_address(address))
            return str(name) if name else None
        except Exception as exc:  # noqa: BLE001
            last_error = exc
    if last_error is not None:
        raise RuntimeError(f"ENS reverse lookup failed via {', '.join(rpc_urls)}: {last_error}") from last_error
    return None


class DisplayNameResolver:
    """Maps chat sender identities to the author names used in the document.

    Order: configured alias, ENS reverse record (0x addresses only), shortened
    identity. Lookup failures fall through to the shortened identity and are
    not cached, so a later message can still pick up the ENS name.
    """

    def __init__(
        self,
        aliases: Mapping[str, str] | None = None,
        *,
        rpc_urls: Sequence[str] = DEFAULT_ENS_RPC_URLS,
        cache: TTLCache | None = None,
        ens_lookup: EnsLookup | None = reverse_ens_lookup,
    ) -> None:
        self.aliases = {key.strip().lower(): value for key, value in (aliases or {}).items() if key.strip()}
        self.rpc_urls = list(rpc_urls)
        self.cache = cache if cache is not None else TTLCache(NAME_CACHE_TTL_S)
        self.ens_lookup = ens_lookup
        self.last_error = ""

    async def resolve(self, identity: str) -> str:
        key = (identity or "").strip()
        if not key:
            return "unknown"
        alias = self.aliases.get(key.lower())
        if alias:
            return alias

        cached = self.cache.lookup(key.lower())
        if not is_missing(cached):
            return cached

        if looks_like_eth_address(key) and self.ens_lookup is not None and self.rpc_urls:
            try:
                name = await asyncio.to_thread(self.ens_lookup, key, self.rpc_urls)
            except Exception as exc:  # noqa: BLE001
                self.last_error = str(exc)
                return short_identity(key)
            resolved = name or short_identity(key)
        else:
            resolved = short_identity(key)
        self.cache.put(key.lower(), resolved)
        return resolved

    __call__ = resolve
