"""
Async HTTP clients for marketplace reads and bid submission.

Both clients share the same surface (MarketplaceClient) so the monitor and
the submission protocol never branch on marketplace.
"""

from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import httpx

from bidsync.core import json_utils
from bidsync.core.errors import SubmissionError, TransientFetchError
from bidsync.core.models import MARKET_PRICE_TICK, BestOffer, Bid, BidDescriptor, Collection, FormattedBid, Marketplace
from bidsync.core.rounding import decimal_to_wei, floor_to_tick, wei_to_decimal

WETH_ADDRESS = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
SEAPORT_CONDUIT_KEY = "0x0000007b02230091a7ed01230072f7006a004d60a8d4e71d599b8104250f0000"
ZERO_BYTES32 = "0x" + "00" * 32
NFT_ITEM_TYPE = 4  # ERC721_WITH_CRITERIA

CHAIN_IDS = {"ethereum": 1, "sepolia": 11155111, "base": 8453}

SEAPORT_TYPES: Dict[str, List[Dict[str, str]]] = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "OrderComponents": [
        {"name": "offerer", "type": "address"},
        {"name": "zone", "type": "address"},
        {"name": "offer", "type": "OfferItem[]"},
        {"name": "consideration", "type": "ConsiderationItem[]"},
        {"name": "orderType", "type": "uint8"},
        {"name": "startTime", "type": "uint256"},
        {"name": "endTime", "type": "uint256"},
        {"name": "zoneHash", "type": "bytes32"},
        {"name": "salt", "type": "uint256"},
        {"name": "conduitKey", "type": "bytes32"},
        {"name": "counter", "type": "uint256"},
    ],
    "OfferItem": [
        {"name": "itemType", "type": "uint8"},
        {"name": "token", "type": "address"},
        {"name": "identifierOrCriteria", "type": "uint256"},
        {"name": "startAmount", "type": "uint256"},
        {"name": "endAmount", "type": "uint256"},
    ],
    "ConsiderationItem": [
        {"name": "itemType", "type": "uint8"},
        {"name": "token", "type": "address"},
        {"name": "identifierOrCriteria", "type": "uint256"},
        {"name": "startAmount", "type": "uint256"},
        {"name": "endAmount", "type": "uint256"},
        {"name": "recipient", "type": "address"},
    ],
}


class MarketplaceClient(Protocol):
    marketplace: Marketplace
    supports_cancel: bool

    async def best_offer(self, collection: Collection) -> BestOffer: ...

    async def format_bid(self, descriptor: BidDescriptor) -> FormattedBid: ...

    async def submit_bid(self, descriptor: BidDescriptor, side_data: Dict[str, Any], signature: str) -> Optional[str]: ...

    async def cancel_bid(self, collection: Collection, bid: Bid) -> None: ...

    async def close(self) -> None: ...


class _HttpClient:
    marketplace: Marketplace
    supports_cancel = False

    def __init__(
        self,
        base_url: str,
        headers: Dict[str, str],
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        # A shared client passed in is not closed by close(); otherwise we own it.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _get(self, path: str, collection: Collection) -> httpx.Response:
        try:
            resp = await self.client.get(path)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransientFetchError(
                f"GET {path} failed: {exc}",
                collection=collection.contract_address,
                marketplace=self.marketplace.value,
            ) from exc
        return resp

    async def _post(self, path: str, payload: Dict[str, Any], step: str, collection: Collection) -> Any:
        try:
            resp = await self.client.post(path, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SubmissionError(
                f"POST {path} -> {exc.response.status_code}: {exc.response.text[:300]}",
                step=step,
                collection=collection.contract_address,
                marketplace=self.marketplace.value,
            ) from exc
        except httpx.HTTPError as exc:
            raise SubmissionError(
                f"POST {path} failed: {exc}",
                step=step,
                collection=collection.contract_address,
                marketplace=self.marketplace.value,
            ) from exc
        if not resp.content:
            return {}
        return resp.json()


# =============================================================================
# OpenSea
# =============================================================================

def opensea_price_per_nft(offer: Dict[str, Any]) -> Decimal:
    """Per-NFT price of a collection offer: total / number of NFT consideration items."""
    price = offer["price"]
    total_wei = int(price["value"])
    consideration = ((offer.get("protocol_data") or {}).get("parameters") or {}).get("consideration") or []
    count = sum(1 for item in consideration if int(item.get("itemType", -1)) == NFT_ITEM_TYPE) or 1
    return wei_to_decimal(total_wei // count, int(price.get("decimals", 18)))


class OpenSeaClient(_HttpClient):
    marketplace = Marketplace.OPENSEA
    supports_cancel = True

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        offerer: str,
        protocol_address: str,
        chain: str = "ethereum",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"accept": "application/json", "content-type": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        super().__init__(base_url, headers, timeout=timeout, client=client)
        self.offerer = offerer
        self.protocol_address = protocol_address
        self.chain = chain

    async def best_offer(self, collection: Collection) -> BestOffer:
        resp = await self._get(f"/api/v2/offers/collection/{collection.slug}", collection)
        offers = resp.json().get("offers") or []
        if not offers:
            return BestOffer.empty()
        top = offers[0]
        # Price parsing happens in the monitor's validation; keep raw even when malformed
        try:
            price: Optional[Decimal] = opensea_price_per_nft(top)
        except (KeyError, TypeError, ValueError):
            price = None
        return BestOffer(raw=json_utils.canonical(top), price=price, order_id=top.get("order_hash"))

    async def format_bid(self, descriptor: BidDescriptor) -> FormattedBid:
        collection = descriptor.collection
        body = {
            "quantity": descriptor.quantity,
            "criteria": {"collection": {"slug": collection.slug}},
            "offer_protection_enabled": True,
            "offerer": self.offerer,
            "protocol_address": self.protocol_address,
        }
        built = await self._post("/api/v2/offers/build", body, "format", collection)
        partial = built.get("partialParameters") or {}
        amount_wei = str(decimal_to_wei(descriptor.amount * descriptor.quantity))
        components = {
            "offerer": self.offerer,
            "zone": partial.get("zone", "0x" + "00" * 20),
            "offer": [
                {
                    "itemType": 1,
                    "token": WETH_ADDRESS,
                    "identifierOrCriteria": "0",
                    "startAmount": amount_wei,
                    "endAmount": amount_wei,
                }
            ],
            "consideration": partial.get("consideration") or [],
            "orderType": 2,
            "startTime": str(int(time.time())),
            "endTime": str(descriptor.expiration_time),
            "zoneHash": partial.get("zoneHash", ZERO_BYTES32),
            "salt": str(int.from_bytes(secrets.token_bytes(32), "big")),
            "conduitKey": SEAPORT_CONDUIT_KEY,
            "counter": str(built.get("counter", 0)),
        }
        typed_data = {
            "domain": {
                "name": "Seaport",
                "version": "1.6",
                "chainId": CHAIN_IDS.get(self.chain, 1),
                "verifyingContract": self.protocol_address,
            },
            "types": SEAPORT_TYPES,
            "primaryType": "OrderComponents",
            "message": components,
        }
        side_data = {"criteria": built.get("criteria") or body["criteria"], "parameters": components}
        return FormattedBid(typed_data=typed_data, side_data=side_data)

    async def submit_bid(self, descriptor: BidDescriptor, side_data: Dict[str, Any], signature: str) -> Optional[str]:
        parameters = dict(side_data["parameters"])
        parameters["totalOriginalConsiderationItems"] = len(parameters.get("consideration") or [])
        body = {
            "protocol_data": {"parameters": parameters, "signature": signature},
            "criteria": side_data["criteria"],
            "protocol_address": self.protocol_address,
        }
        data = await self._post("/api/v2/offers", body, "submit", descriptor.collection)
        return data.get("order_hash")

    async def cancel_bid(self, collection: Collection, bid: Bid) -> None:
        if not bid.quote_id:
            raise SubmissionError("bid has no order hash to cancel", step="cancel",
                                  collection=collection.contract_address, marketplace=self.marketplace.value)
        path = f"/api/v2/orders/chain/{self.chain}/protocol/{self.protocol_address}/{bid.quote_id}/cancel"
        await self._post(path, {}, "cancel", collection)


# =============================================================================
# Blur (nfttools proxy)
# =============================================================================

class BlurClient(_HttpClient):
    marketplace = Marketplace.BLUR
    supports_cancel = False

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str],
        wallet_address: str,
        api_key: Optional[str],
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {
            "content-type": "application/json",
            "authToken": auth_token or "",
            "walletAddress": wallet_address,
            "X-NFT-API-Key": api_key or "",
        }
        super().__init__(base_url, headers, timeout=timeout, client=client)
        self.wallet_address = wallet_address

    async def best_offer(self, collection: Collection) -> BestOffer:
        resp = await self._get(f"/collections/{collection.contract_address}/bid-levels", collection)
        levels = resp.json().get("priceLevels") or []
        if not levels:
            return BestOffer.empty()
        top = levels[0]
        try:
            price: Optional[Decimal] = Decimal(str(top["price"]))
        except (KeyError, ArithmeticError):
            price = None
        # Blur bid levels are pooled; there is no per-order id to track
        return BestOffer(raw=json_utils.canonical(top), price=price, order_id=None)

    def _bid_body(self, descriptor: BidDescriptor) -> Dict[str, Any]:
        expires = datetime.fromtimestamp(descriptor.expiration_time, tz=timezone.utc)
        return {
            "contractAddress": descriptor.collection.contract_address,
            "price": {"unit": "BETH", "amount": str(floor_to_tick(descriptor.amount, MARKET_PRICE_TICK[self.marketplace]))},
            "quantity": descriptor.quantity,
            "expirationTime": expires.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }

    async def format_bid(self, descriptor: BidDescriptor) -> FormattedBid:
        data = await self._post("/collection-bids/format", self._bid_body(descriptor), "format", descriptor.collection)
        entry = next((s for s in data.get("signatures") or [] if s.get("marketplace") == "BLUR"), None)
        if entry is None:
            raise SubmissionError(
                "no BLUR signature returned from format",
                step="format",
                collection=descriptor.collection.contract_address,
                marketplace=self.marketplace.value,
            )
        sign_data = entry["signData"]
        typed_data = {
            "domain": sign_data["domain"],
            "types": sign_data["types"],
            "message": sign_data["value"],
        }
        if "primaryType" in sign_data:
            typed_data["primaryType"] = sign_data["primaryType"]
        return FormattedBid(typed_data=typed_data, side_data={"marketplaceData": entry.get("marketplaceData")})

    async def submit_bid(self, descriptor: BidDescriptor, side_data: Dict[str, Any], signature: str) -> Optional[str]:
        body = {**self._bid_body(descriptor), "marketplaceData": side_data.get("marketplaceData"), "signature": signature}
        data = await self._post("/collection-bids/submit", body, "submit", descriptor.collection)
        if isinstance(data, dict):
            return data.get("hash") or data.get("id")
        return None

    async def cancel_bid(self, collection: Collection, bid: Bid) -> None:
        raise SubmissionError("blur collection bids cannot be cancelled", step="cancel",
                              collection=collection.contract_address, marketplace=self.marketplace.value)


def build_clients(cfg: Any, offerer: str) -> Dict[Marketplace, MarketplaceClient]:
    return {
        Marketplace.OPENSEA: OpenSeaClient(
            cfg.opensea_api_url,
            cfg.opensea_api_key,
            offerer=offerer,
            protocol_address=cfg.opensea_protocol_address,
            chain=cfg.chain,
            timeout=cfg.http_timeout,
        ),
        Marketplace.BLUR: BlurClient(
            cfg.blur_api_url,
            cfg.blur_auth_token,
            wallet_address=offerer,
            api_key=cfg.nft_api_key,
            timeout=cfg.http_timeout,
        ),
    }
