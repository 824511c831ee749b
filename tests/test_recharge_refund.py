"""
Recharge and refund requests: submission and exactly-once settlement.
"""

import asyncio

import pytest

from tokenshop.errors import (
    AlreadyProcessed, AlreadyRefunded, InvalidInput, OrderInProgress,
    OrderNotFound, RefundExists, RequestNotFound, TokenBlocked, TokenExists,
)


class TestRecharge:
    """Balance top-ups reviewed by an operator"""

    @pytest.mark.asyncio
    async def test_approve_credits_balance(self, shop, seed):
        token_id = await seed.token(balance=100)
        sub = await shop.submit_recharge(amount=2500, token_id=token_id,
                                         payment_method="bank")
        result = await shop.process_recharge(sub["request_id"], "approve")
        assert result["status"] == "approved"
        assert result["new_balance"] == 2600
        assert await seed.ledger_sum(token_id) == 2600

    @pytest.mark.asyncio
    async def test_reject_leaves_balance(self, shop, seed):
        token_id = await seed.token(balance=100)
        sub = await shop.submit_recharge(amount=2500, token_id=token_id)
        result = await shop.process_recharge(sub["request_id"], "reject",
                                             note="no proof")
        assert result["status"] == "rejected"
        assert result["new_balance"] is None
        assert await seed.balance(token_id) == 100

    @pytest.mark.asyncio
    async def test_double_approval_credits_once(self, shop, seed):
        token_id = await seed.token()
        sub = await shop.submit_recharge(amount=1000, token_id=token_id)

        results = await asyncio.gather(
            shop.process_recharge(sub["request_id"], "approve"),
            shop.process_recharge(sub["request_id"], "approve"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, dict) for r in results) == 1
        assert sum(isinstance(r, AlreadyProcessed) for r in results) == 1
        assert await seed.balance(token_id) == 1000
        assert await seed.ledger_sum(token_id) == 1000

    @pytest.mark.asyncio
    async def test_second_click_reports_status(self, shop, seed):
        token_id = await seed.token()
        sub = await shop.submit_recharge(amount=1000, token_id=token_id)
        await shop.process_recharge(sub["request_id"], "reject")
        with pytest.raises(AlreadyProcessed) as exc:
            await shop.process_recharge(sub["request_id"], "approve")
        assert exc.value.extra["status"] == "rejected"
        assert await seed.balance(token_id) == 0

    @pytest.mark.asyncio
    async def test_new_token_is_created(self, shop, seed):
        sub = await shop.submit_recharge(amount=500, new_token="fresh-one",
                                         user_ip="10.0.0.1")
        assert sub["created_token"] == "fresh-one"
        await shop.process_recharge(sub["request_id"], "approve")
        assert await seed.balance(sub["token_id"]) == 500

    @pytest.mark.asyncio
    async def test_new_token_must_be_unique(self, shop, seed):
        await seed.token(value="Taken")
        with pytest.raises(TokenExists):
            await shop.submit_recharge(amount=500, new_token="taken")

    @pytest.mark.asyncio
    async def test_blocked_token(self, shop, seed):
        token_id = await seed.token(blocked=True)
        with pytest.raises(TokenBlocked):
            await shop.submit_recharge(amount=500, token_id=token_id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, "10", None])
    async def test_bad_amount(self, shop, seed, amount):
        token_id = await seed.token()
        with pytest.raises(InvalidInput):
            await shop.submit_recharge(amount=amount, token_id=token_id)

    @pytest.mark.asyncio
    async def test_unknown_request(self, shop):
        with pytest.raises(RequestNotFound):
            await shop.process_recharge("missing", "approve")


async def finished_order(shop, seed, make_request):
    token_id = await seed.token(balance=5000)
    await seed.option(price=2000, stock=1)
    placed = await shop.place_order(make_request())
    return token_id, placed


class TestRefund:
    """Refund requests against finished orders"""

    @pytest.mark.asyncio
    async def test_submit_and_approve_default_amount(self, shop, seed,
                                                     make_request):
        token_id, placed = await finished_order(shop, seed, make_request)
        sub = await shop.submit_refund("tok-alice", placed["order_number"],
                                       "code did not work")
        assert sub["order_number"] == placed["order_number"]

        result = await shop.process_refund("approve",
                                           request_id=sub["request_id"])
        assert result["status"] == "approved"
        assert result["new_balance"] == 5000

        status = await shop.refund_status("tok-alice",
                                          placed["order_number"])
        assert status["status"] == "approved"
        assert status["refund_amount"] == 2000

    @pytest.mark.asyncio
    async def test_partial_amount(self, shop, seed, make_request):
        token_id, placed = await finished_order(shop, seed, make_request)
        sub = await shop.submit_refund("tok-alice", placed["order_number"])
        await shop.process_refund("approve", request_id=sub["request_id"],
                                  amount=500)
        assert await seed.balance(token_id) == 3500

    @pytest.mark.asyncio
    async def test_order_number_without_prefix(self, shop, seed,
                                               make_request):
        _, placed = await finished_order(shop, seed, make_request)
        bare = placed["order_number"][len("ORD-"):]
        sub = await shop.submit_refund("tok-alice", bare)
        assert sub["order_number"] == placed["order_number"]
        result = await shop.process_refund("reject", order_number=bare)
        assert result["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_one_request_per_order(self, shop, seed, make_request):
        _, placed = await finished_order(shop, seed, make_request)
        await shop.submit_refund("tok-alice", placed["order_number"])
        with pytest.raises(RefundExists) as exc:
            await shop.submit_refund("tok-alice", placed["order_number"])
        assert exc.value.to_dict() == {
            "success": False, "error": "REFUND_EXISTS", "status": "pending",
        }

    @pytest.mark.asyncio
    async def test_active_order_cannot_be_refunded(self, shop, seed,
                                                   make_request):
        await seed.token(balance=5000)
        await seed.option(mode="chat", price=1000)
        placed = await shop.place_order(make_request())
        with pytest.raises(OrderInProgress):
            await shop.submit_refund("tok-alice", placed["order_number"])

    @pytest.mark.asyncio
    async def test_someone_elses_order(self, shop, seed, make_request):
        _, placed = await finished_order(shop, seed, make_request)
        await seed.token(value="tok-bob")
        with pytest.raises(OrderNotFound):
            await shop.submit_refund("tok-bob", placed["order_number"])

    @pytest.mark.asyncio
    async def test_settled_once(self, shop, seed, make_request):
        token_id, placed = await finished_order(shop, seed, make_request)
        sub = await shop.submit_refund("tok-alice", placed["order_number"])
        await shop.process_refund("approve", request_id=sub["request_id"])
        with pytest.raises(AlreadyProcessed):
            await shop.process_refund("approve", request_id=sub["request_id"])
        assert await seed.balance(token_id) == 5000

    @pytest.mark.asyncio
    async def test_bad_amount(self, shop):
        with pytest.raises(InvalidInput):
            await shop.process_refund("approve", request_id="x", amount=0)

    @pytest.mark.asyncio
    async def test_cancelled_order_is_not_refunded_twice(self, shop, seed,
                                                         make_request):
        token_id = await seed.token(balance=5000)
        await seed.option(mode="chat", price=2000)
        placed = await shop.place_order(make_request())
        await shop.cancel_order(placed["order_id"], token_id)
        assert await seed.balance(token_id) == 5000

        with pytest.raises(AlreadyRefunded) as exc:
            await shop.submit_refund("tok-alice", placed["order_number"])
        assert exc.value.to_dict() == {
            "success": False, "error": "ALREADY_REFUNDED",
            "order_number": placed["order_number"],
        }
        assert await seed.balance(token_id) == 5000
        assert await seed.ledger_sum(token_id) == 5000

    @pytest.mark.asyncio
    async def test_rejected_order_is_not_refunded_twice(self, shop, seed,
                                                        make_request):
        token_id = await seed.token(balance=5000)
        await seed.option(mode="chat", price=2000)
        placed = await shop.place_order(make_request())
        await shop.transition_order(placed["order_id"], "rejected",
                                    "cannot deliver")
        assert await seed.balance(token_id) == 5000

        with pytest.raises(AlreadyRefunded):
            await shop.submit_refund("tok-alice", placed["order_number"])
        assert await seed.balance(token_id) == 5000

    @pytest.mark.asyncio
    async def test_amount_above_order_total(self, shop, seed, make_request):
        token_id, placed = await finished_order(shop, seed, make_request)
        sub = await shop.submit_refund("tok-alice", placed["order_number"])
        with pytest.raises(InvalidInput) as exc:
            await shop.process_refund("approve",
                                      request_id=sub["request_id"],
                                      amount=2500)
        assert exc.value.extra == {"field": "amount", "refundable": 2000}
        assert await seed.balance(token_id) == 3000

        # the request is still pending and can be approved in full
        result = await shop.process_refund("approve",
                                           request_id=sub["request_id"])
        assert result["new_balance"] == 5000
