"""
Bid signing and submission.

submit() runs the full pipeline for one bid:

    descriptor -> format (marketplace) -> normalize (EIP-712 schema)
               -> sign (external signer) -> submit (marketplace) -> Bid(active)

Every step failure surfaces as SubmissionError tagged with the step name.
Nothing here writes to the ledger; the caller decides what to record.
"""

from __future__ import annotations

import asyncio
import logging
import re
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from eth_account.signers.local import LocalAccount

from bidsync.core import json_utils
from bidsync.core.errors import SubmissionError
from bidsync.core.models import Bid, BidDescriptor, BidStatus, Collection, FormattedBid, Marketplace

log = logging.getLogger("bidsync")

_ARRAY_RE = re.compile(r"^(.+)\[(\d*)\]$")


# =============================================================================
# EIP-712 normalization
# =============================================================================

def _is_integer_type(type_name: str) -> bool:
    return type_name.startswith("uint") or type_name.startswith("int")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"boolean is not an integer value: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, dict):
        # BigNumber encodings: {"type": "BigNumber", "hex": "0x.."} or ethers v5 {"_hex": "0x.."}
        hex_value = value.get("hex", value.get("_hex"))
        if not isinstance(hex_value, str):
            raise ValueError(f"unsupported integer encoding: {value!r}")
        return int(hex_value, 16)
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith(("0x", "-0x")):
            return int(text, 16)
        return int(text, 10)
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return int(value)
    raise ValueError(f"unsupported integer value: {value!r}")


def _walk(type_name: str, value: Any, types: Mapping[str, Any], convert: Callable[[Any], Any]) -> Any:
    match = _ARRAY_RE.match(type_name)
    if match:
        if not isinstance(value, list):
            raise ValueError(f"expected list for {type_name}, got {type(value).__name__}")
        return [_walk(match.group(1), item, types, convert) for item in value]
    if type_name in types:
        return _walk_struct(type_name, value, types, convert)
    if _is_integer_type(type_name):
        return convert(value)
    return value


def _walk_struct(struct: str, value: Any, types: Mapping[str, Any], convert: Callable[[Any], Any]) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"expected object for struct {struct}, got {type(value).__name__}")
    out = dict(value)
    for member in types[struct]:
        name = member["name"]
        if name in value:
            out[name] = _walk(member["type"], value[name], types, convert)
    return out


def _primary_type(typed_data: Mapping[str, Any]) -> str:
    primary = typed_data.get("primaryType")
    if primary:
        return primary
    # Without an explicit primaryType, the primary struct is the one no other struct references
    types = {k: v for k, v in typed_data["types"].items() if k != "EIP712Domain"}
    referenced = {
        _ARRAY_RE.sub(r"\1", member["type"]) for members in types.values() for member in members
    }
    roots = [name for name in types if name not in referenced]
    if len(roots) != 1:
        raise ValueError(f"cannot infer primaryType from {sorted(types)}")
    return roots[0]


def normalize_typed_data(typed_data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of typed_data whose message has every uint*/int* field,
    at any nesting depth, rewritten as a decimal string.

    Field types come from typed_data["types"], never from the value's shape.
    """
    if not isinstance(typed_data, Mapping):
        raise ValueError("typed data must be an object")
    for required in ("domain", "types", "message"):
        if required not in typed_data:
            raise ValueError(f"typed data missing {required!r}")
    types = typed_data["types"]
    primary = _primary_type(typed_data)
    if primary not in types:
        raise ValueError(f"primaryType {primary!r} not declared in types")

    out = dict(typed_data)
    out["primaryType"] = primary
    out["message"] = _walk_struct(primary, typed_data["message"], types, lambda v: str(_to_int(v)))
    if "EIP712Domain" in types:
        out["domain"] = _walk_struct("EIP712Domain", typed_data["domain"], types, lambda v: str(_to_int(v)))
    return out


# =============================================================================
# Signer
# =============================================================================

class Signer(Protocol):
    async def sign(self, typed_data: Dict[str, Any]) -> str: ...


class TypedDataSigner:
    """Local-key EIP-712 signer backed by eth_account."""

    def __init__(self, account: LocalAccount) -> None:
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    async def sign(self, typed_data: Dict[str, Any]) -> str:
        types = typed_data["types"]
        message_types = {k: v for k, v in types.items() if k != "EIP712Domain"}
        message = _walk_struct(typed_data["primaryType"], typed_data["message"], types, _to_int)
        domain = dict(typed_data["domain"])
        if "chainId" in domain:
            domain["chainId"] = _to_int(domain["chainId"])
        signed = self._account.sign_typed_data(
            domain_data=domain,
            message_types=message_types,
            message_data=message,
        )
        return "0x" + bytes(signed.signature).hex()


# =============================================================================
# Submission protocol
# =============================================================================

class SigningSubmissionProtocol:
    """
    Formats, signs, submits and cancels bids through per-marketplace clients.

    clients: Marketplace -> MarketplaceClient (see bidsync.market_data.clients)
    """

    def __init__(
        self,
        clients: Mapping[Marketplace, Any],
        signer: Signer,
        log_event: Optional[Callable[..., None]] = None,
        metrics: Any = None,
    ) -> None:
        self._clients = dict(clients)
        self._signer = signer
        self._metrics = metrics
        self._log = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json_utils.dumps({"event": event, **kwargs}))

    def client(self, marketplace: Marketplace) -> Any:
        try:
            return self._clients[marketplace]
        except KeyError:
            raise SubmissionError(f"no client configured for {marketplace.value}", step="format",
                                  marketplace=marketplace.value) from None

    def supports_cancel(self, marketplace: Marketplace) -> bool:
        client = self._clients.get(marketplace)
        return bool(client is not None and client.supports_cancel)

    async def submit(
        self,
        collection: Collection,
        marketplace: Marketplace,
        amount: Decimal,
        expiration_time: int,
    ) -> Bid:
        client = self.client(marketplace)
        ctx = {"collection": collection.contract_address, "marketplace": marketplace.value}
        descriptor = BidDescriptor(collection=collection, amount=amount, expiration_time=int(expiration_time))

        formatted: FormattedBid = await self._step("format", ctx, client.format_bid(descriptor))
        try:
            payload = normalize_typed_data(formatted.typed_data)
        except (ValueError, KeyError, TypeError) as exc:
            self._count_error(marketplace, "normalize")
            raise SubmissionError(f"cannot normalize typed data: {exc}", step="normalize", **ctx) from exc
        signature = await self._step("sign", ctx, self._signer.sign(payload))
        quote_id = await self._step("submit", ctx, client.submit_bid(descriptor, formatted.side_data, signature))

        self._log("bid_submitted", amount=str(amount), expiration_time=descriptor.expiration_time,
                  quote_id=quote_id, **ctx)
        if self._metrics is not None:
            self._metrics.bids_submitted.labels(marketplace=marketplace.value).inc()
        return Bid(
            collection=collection.contract_address,
            marketplace=marketplace,
            amount=amount,
            expiration_time=descriptor.expiration_time,
            quote_id=quote_id,
            status=BidStatus.ACTIVE,
            signature=signature,
        )

    async def cancel(self, collection: Collection, marketplace: Marketplace, bid: Bid) -> bool:
        """Cancel bid on the marketplace. Returns False when the marketplace has no cancel support."""
        client = self.client(marketplace)
        ctx = {"collection": collection.contract_address, "marketplace": marketplace.value}
        if not client.supports_cancel:
            self._log("cancel_unsupported", level=logging.DEBUG, quote_id=bid.quote_id, **ctx)
            return False
        await self._step("cancel", ctx, client.cancel_bid(collection, bid))
        self._log("bid_cancelled", amount=str(bid.amount), quote_id=bid.quote_id, **ctx)
        return True

    async def _step(self, step: str, ctx: Dict[str, Any], awaitable: Any) -> Any:
        try:
            return await awaitable
        except SubmissionError:
            self._count_error(ctx["marketplace"], step)
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._count_error(ctx["marketplace"], step)
            raise SubmissionError(f"{step} failed: {exc}", step=step, **ctx) from exc

    def _count_error(self, marketplace: Any, step: str) -> None:
        if self._metrics is not None:
            label = marketplace.value if isinstance(marketplace, Marketplace) else marketplace
            self._metrics.submission_errors.labels(marketplace=label, step=step).inc()
