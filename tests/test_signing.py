"""
Tests for EIP-712 normalization, the local signer and the submission pipeline.
"""

import copy
from decimal import Decimal as D

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from bidsync.core.errors import SubmissionError
from bidsync.core.models import BidStatus, Marketplace
from bidsync.execution.signing import SigningSubmissionProtocol, TypedDataSigner, normalize_typed_data
from bidsync.market_data.clients import SEAPORT_TYPES

TEST_KEY = "0x" + "11" * 32


class TestNormalize:
    def test_bignumber_fields_become_decimal_strings(self, fakes):
        out = normalize_typed_data(fakes.blur_typed_data)

        assert out["message"]["price"] == "190000000000000000"
        assert out["message"]["expirationTime"] == "1700000000"
        assert out["message"]["salt"] == "12345"
        assert out["message"]["trader"] == fakes.blur_typed_data["message"]["trader"]
        assert out["primaryType"] == "Order"

    def test_input_not_mutated(self, fakes):
        original = copy.deepcopy(fakes.blur_typed_data)
        normalize_typed_data(fakes.blur_typed_data)
        assert fakes.blur_typed_data == original

    def test_nested_arrays_follow_schema(self):
        typed = {
            "domain": {"name": "Seaport", "version": "1.6", "chainId": "0x1",
                       "verifyingContract": "0x0000000000000068f116a894984e2db1123eb395"},
            "types": SEAPORT_TYPES,
            "primaryType": "OrderComponents",
            "message": {
                "offerer": "0x8619ad8b126cc45d78c9d1f04c9cb2451d3e5d52",
                "zone": "0x000056f7000000ece9003ca63978907a00ffd100",
                "offer": [{"itemType": 1, "token": "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
                           "identifierOrCriteria": 0, "startAmount": {"_hex": "0x0de0b6b3a7640000"},
                           "endAmount": "1000000000000000000"}],
                "consideration": [],
                "orderType": 2,
                "startTime": 1700000000,
                "endTime": "0x6553f100",
                "zoneHash": "0x" + "00" * 32,
                "salt": "42",
                "conduitKey": "0x" + "00" * 32,
                "counter": 0,
            },
        }

        out = normalize_typed_data(typed)

        item = out["message"]["offer"][0]
        assert item["itemType"] == "1"
        assert item["startAmount"] == "1000000000000000000"
        assert item["token"] == "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
        assert out["message"]["endTime"] == "1700000000"
        assert out["message"]["zoneHash"] == "0x" + "00" * 32
        assert out["domain"]["chainId"] == "1"

    def test_primary_type_inferred(self):
        typed = {
            "domain": {},
            "types": {
                "Outer": [{"name": "inner", "type": "Inner"}, {"name": "n", "type": "uint8"}],
                "Inner": [{"name": "v", "type": "int256"}],
            },
            "message": {"inner": {"v": -5}, "n": 3},
        }
        out = normalize_typed_data(typed)
        assert out["primaryType"] == "Outer"
        assert out["message"] == {"inner": {"v": "-5"}, "n": "3"}

    @pytest.mark.parametrize("typed", [
        {"types": {}, "message": {}},
        {"domain": {}, "types": {"A": [{"name": "x", "type": "uint256"}]}, "primaryType": "B", "message": {}},
        {"domain": {}, "types": {"A": [{"name": "x", "type": "uint256"}]}, "message": {"x": {"oops": 1}}},
        {"domain": {}, "types": {"A": [{"name": "x", "type": "uint256"}]}, "message": {"x": "12abc"}},
    ])
    def test_malformed_payload_raises(self, typed):
        with pytest.raises(ValueError):
            normalize_typed_data(typed)


class TestTypedDataSigner:
    @pytest.mark.asyncio
    async def test_signature_recovers_to_signer(self, fakes):
        account = Account.from_key(TEST_KEY)
        signer = TypedDataSigner(account)
        payload = normalize_typed_data(fakes.blur_typed_data)

        signature = await signer.sign(payload)

        assert signature.startswith("0x") and len(signature) == 132
        signable = encode_typed_data(
            domain_data=fakes.blur_typed_data["domain"],
            message_types=fakes.blur_typed_data["types"],
            message_data={
                "trader": fakes.blur_typed_data["message"]["trader"],
                "price": 190000000000000000,
                "expirationTime": 1700000000,
                "salt": 12345,
            },
        )
        assert Account.recover_message(signable, signature=signature) == account.address


class TestSubmissionProtocol:
    @pytest.fixture
    def wired(self, fakes):
        blur = fakes.Client(Marketplace.BLUR, supports_cancel=False)
        opensea = fakes.Client(Marketplace.OPENSEA)
        signer = fakes.Signer()
        protocol = SigningSubmissionProtocol({Marketplace.BLUR: blur, Marketplace.OPENSEA: opensea}, signer)
        return protocol, blur, opensea, signer

    @pytest.mark.asyncio
    async def test_submit_returns_active_bid(self, wired, fakes):
        protocol, blur, opensea, signer = wired

        bid = await protocol.submit(fakes.collection(), Marketplace.BLUR, D("0.19"), 1700000000)

        assert bid.status is BidStatus.ACTIVE
        assert bid.amount == D("0.19")
        assert bid.quote_id == "blur-q1"
        assert bid.expiration_time == 1700000000
        # Signer receives the normalized payload
        assert signer.payloads[0]["message"]["price"] == "190000000000000000"
        assert blur.submitted[0]["side_data"] == {"contract": "0xaaa"}

    @pytest.mark.asyncio
    async def test_format_failure(self, wired, fakes):
        protocol, blur, opensea, signer = wired
        blur.format_fail.add("0xaaa")

        with pytest.raises(SubmissionError) as exc:
            await protocol.submit(fakes.collection(), Marketplace.BLUR, D("0.19"), 1700000000)

        assert exc.value.step == "format"
        assert signer.payloads == []
        assert blur.submitted == []

    @pytest.mark.asyncio
    async def test_sign_failure(self, fakes):
        blur = fakes.Client(Marketplace.BLUR)
        protocol = SigningSubmissionProtocol({Marketplace.BLUR: blur}, fakes.Signer(fail=True))

        with pytest.raises(SubmissionError) as exc:
            await protocol.submit(fakes.collection(), Marketplace.BLUR, D("0.19"), 1700000000)

        assert exc.value.step == "sign"
        assert exc.value.collection == "0xaaa"
        assert blur.submitted == []

    @pytest.mark.asyncio
    async def test_normalize_failure(self, wired, fakes):
        protocol, blur, opensea, signer = wired

        async def bad_format(descriptor):
            from bidsync.core.models import FormattedBid
            return FormattedBid(typed_data={"domain": {}, "message": {}})

        blur.format_bid = bad_format
        with pytest.raises(SubmissionError) as exc:
            await protocol.submit(fakes.collection(), Marketplace.BLUR, D("0.19"), 1700000000)
        assert exc.value.step == "normalize"

    @pytest.mark.asyncio
    async def test_submit_failure(self, wired, fakes):
        protocol, blur, opensea, signer = wired

        async def rejected(descriptor, side_data, signature):
            raise ConnectionError("reset by peer")

        blur.submit_bid = rejected
        with pytest.raises(SubmissionError) as exc:
            await protocol.submit(fakes.collection(), Marketplace.BLUR, D("0.19"), 1700000000)
        assert exc.value.step == "submit"
        assert isinstance(exc.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_cancel(self, wired, fakes):
        protocol, blur, opensea, signer = wired

        assert await protocol.cancel(fakes.collection(), Marketplace.OPENSEA, fakes.bid(quote_id="h1")) is True
        assert opensea.cancelled == ["h1"]

    @pytest.mark.asyncio
    async def test_cancel_unsupported_is_degraded_not_error(self, wired, fakes):
        protocol, blur, opensea, signer = wired

        bid = fakes.bid(marketplace=Marketplace.BLUR)
        assert await protocol.cancel(fakes.collection(), Marketplace.BLUR, bid) is False
        assert blur.cancelled == []
        assert not protocol.supports_cancel(Marketplace.BLUR)
        assert protocol.supports_cancel(Marketplace.OPENSEA)

    @pytest.mark.asyncio
    async def test_cancel_failure(self, wired, fakes):
        protocol, blur, opensea, signer = wired
        opensea.cancel_fail = True

        with pytest.raises(SubmissionError) as exc:
            await protocol.cancel(fakes.collection(), Marketplace.OPENSEA, fakes.bid())
        assert exc.value.step == "cancel"

    @pytest.mark.asyncio
    async def test_unknown_marketplace(self, fakes):
        protocol = SigningSubmissionProtocol({}, fakes.Signer())
        with pytest.raises(SubmissionError):
            await protocol.submit(fakes.collection(), Marketplace.BLUR, D("0.19"), 1700000000)
