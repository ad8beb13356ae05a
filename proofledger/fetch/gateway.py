# proofledger/fetch/gateway.py
"""
Off-chain metadata retrieval from IPFS gateways.

One fetch per CID at a time: concurrent callers share the same in-flight task,
completed documents are cached for the life of the process (content addressed,
so they never change), failures are evicted so a later call can try again.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Type

import cbor2
import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from proofledger.core.cid import gateway_url
from proofledger.core.config import Settings, load_settings
from proofledger.core.errors import GatewayError, MetadataParseError
from proofledger.core.schema import AttestationMetadata

logger = logging.getLogger(__name__)

PUBLIC_GATEWAYS = (
    "https://gateway.lighthouse.storage/ipfs",
    "https://ipfs.io/ipfs",
    "https://dweb.link/ipfs",
    "https://cloudflare-ipfs.com/ipfs",
)

ACCEPT = "application/json, application/cbor"
DEFAULT_TIMEOUT = 15.0

# Storage propagation delay dominates, not flaky networking: fixed schedule (seconds)
PROBE_RETRY_DELAYS = (0.0, 5.0, 15.0, 30.0)
RETRYABLE_PROBE_STATUSES = frozenset({404, 502, 504})

Sleep = Callable[[float], Awaitable[Any]]


def resolve_gateways(configured: Optional[str] = None, settings: Optional[Settings] = None) -> List[str]:
    """Explicit gateway, then environment gateways, then public fallbacks (deduplicated)."""
    settings = settings or load_settings()
    ordered = [configured or settings.ipfs_gateway, *settings.extra_gateways, *PUBLIC_GATEWAYS]
    seen = set()
    gateways = []
    for gateway in ordered:
        base = (gateway or "").strip().rstrip("/")
        if base and base not in seen:
            seen.add(base)
            gateways.append(base)
    return gateways


@dataclass(frozen=True)
class MetadataEnvelope:
    cid: str
    metadata: BaseModel
    raw: Dict[str, Any] = field(default_factory=dict)
    gateway: Optional[str] = None

    @property
    def extras(self) -> Dict[str, Any]:
        """Undeclared top-level keys (legacy signature fields live here)."""
        return dict(self.metadata.model_extra or {})


def _parse_json(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise GatewayError(f"metadata-undecodable: {e}") from e


def decode_payload(body: bytes, content_type: str = "") -> Any:
    """JSON/text content types are JSON; anything else is tried as CBOR first."""
    if not body:
        raise GatewayError("metadata-empty: gateway returned an empty body")
    media_type = content_type.split(";", 1)[0].strip().lower()
    if "json" in media_type or media_type.startswith("text/"):
        return _parse_json(body)
    try:
        decoded = cbor2.loads(body)
    except (ValueError, EOFError) as e:
        logger.debug("[proofledger:fetch] CBOR decode failed (%s), trying JSON", e)
        return _parse_json(body)
    if not isinstance(decoded, Mapping):
        # JSON text can masquerade as a short CBOR string
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise MetadataParseError("schema: metadata document must be an object") from None
    return decoded


def parse_metadata(payload: Any, model: Type[BaseModel] = AttestationMetadata) -> BaseModel:
    if not isinstance(payload, Mapping):
        raise MetadataParseError("schema: metadata document must be an object")
    try:
        return model.model_validate(dict(payload))
    except SchemaError as e:
        issues = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        ]
        raise MetadataParseError(f"schema:{'|'.join(issues) or 'invalid'}", issues) from e


class MetadataFetcher:
    def __init__(
        self,
        gateways: Optional[Sequence[str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        model: Type[BaseModel] = AttestationMetadata,
        retry_delays: Sequence[float] = (0.0,),
        sleep: Sleep = asyncio.sleep,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.gateways = [g.rstrip("/") for g in gateways] if gateways else resolve_gateways()
        if not self.gateways:
            raise ValueError("At least one gateway is required")
        self.model = model
        self.retry_delays = tuple(retry_delays) or (0.0,)
        self.timeout = timeout
        self._client = client
        self._sleep = sleep
        self._inflight: Dict[str, asyncio.Task] = {}
        self._cache: Dict[str, MetadataEnvelope] = {}

    def cached(self, cid: str) -> Optional[MetadataEnvelope]:
        return self._cache.get(cid)

    def clear(self) -> None:
        self._cache.clear()

    async def fetch(self, cid: str) -> MetadataEnvelope:
        cached = self._cache.get(cid)
        if cached is not None:
            return cached

        task = self._inflight.get(cid)
        if task is None or (task.done() and (task.cancelled() or task.exception() is not None)):
            task = asyncio.ensure_future(self._load(cid))
            self._inflight[cid] = task
            task.add_done_callback(lambda t, key=cid: self._settle(key, t))
        else:
            logger.debug("[proofledger:fetch] joining in-flight fetch for %s", cid)

        # shield: a caller that gives up must not cancel the shared fetch
        return await asyncio.shield(task)

    def _settle(self, cid: str, task: asyncio.Task) -> None:
        if self._inflight.get(cid) is task:
            del self._inflight[cid]
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            self._cache[cid] = task.result()
        else:
            logger.debug("[proofledger:fetch] evicting failed fetch for %s: %s", cid, error)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                yield client

    async def _load(self, cid: str) -> MetadataEnvelope:
        last_error: Optional[GatewayError] = None
        for attempt, delay in enumerate(self.retry_delays):
            if delay:
                await self._sleep(delay)
            async with self._session() as client:
                for gateway in self.gateways:
                    try:
                        return await self._get(client, gateway, cid)
                    except GatewayError as e:
                        last_error = e
                        logger.debug(
                            "[proofledger:fetch] %s failed on %s (attempt %d): %s",
                            cid, gateway, attempt + 1, e,
                        )
        raise GatewayError(
            f"Metadata fetch failed for {cid}: {last_error}",
            status=last_error.status if last_error else None,
            url=last_error.url if last_error else None,
        )

    async def _get(self, client: httpx.AsyncClient, gateway: str, cid: str) -> MetadataEnvelope:
        url = gateway_url(gateway, cid)
        try:
            response = await client.get(url, headers={"Accept": ACCEPT})
        except httpx.HTTPError as e:
            raise GatewayError(f"{type(e).__name__}: {e}", url=url) from e
        if not response.is_success:
            raise GatewayError(f"HTTP {response.status_code} from {url}", status=response.status_code, url=url)

        payload = decode_payload(response.content, response.headers.get("content-type", ""))
        metadata = parse_metadata(payload, self.model)
        logger.debug("[proofledger:fetch] %s served by %s", cid, gateway)
        return MetadataEnvelope(cid=cid, metadata=metadata, raw=dict(payload), gateway=gateway)


class ProbingMetadataFetcher(MetadataFetcher):
    """
    Bridge / reserve variant: HEAD-probe the document before fetching it.
    404/502/504 are retried on PROBE_RETRY_DELAYS; 405 counts as present since
    some gateways refuse HEAD but serve GET.
    """

    def __init__(self, *args, probe_delays: Sequence[float] = PROBE_RETRY_DELAYS, **kwargs):
        super().__init__(*args, **kwargs)
        self.probe_delays = tuple(probe_delays) or (0.0,)

    async def probe(self, client: httpx.AsyncClient, url: str) -> None:
        final = len(self.probe_delays) - 1
        for attempt, delay in enumerate(self.probe_delays):
            if delay:
                await self._sleep(delay)
            try:
                head = await client.head(url)
            except httpx.HTTPError as e:
                if attempt == final:
                    raise GatewayError("head:fetch-failed", url=url) from e
                continue
            if head.is_success or head.status_code == 405:
                return
            if head.status_code in RETRYABLE_PROBE_STATUSES and attempt < final:
                continue
            raise GatewayError(f"head:{head.status_code}", status=head.status_code, url=url)
        raise GatewayError("head:unavailable", url=url)

    async def _get(self, client: httpx.AsyncClient, gateway: str, cid: str) -> MetadataEnvelope:
        await self.probe(client, gateway_url(gateway, cid))
        return await super()._get(client, gateway, cid)


_default_fetcher: Optional[MetadataFetcher] = None


def default_fetcher() -> MetadataFetcher:
    """Process-wide fetcher (and cache) built from the environment."""
    global _default_fetcher
    if _default_fetcher is None:
        _default_fetcher = MetadataFetcher()
    return _default_fetcher
