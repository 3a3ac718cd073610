"""
Redis-backed conversation state
"""

import pytest

from services.session_state import (
    ADMIN_FLOW,
    CHECKOUT_FLOW,
    TOPUP_FLOW,
    SessionStateManager,
)


@pytest.fixture
def state(fake_redis):
    return SessionStateManager


def test_set_get_clear(state, fake_redis):
    assert state.set_state(1, CHECKOUT_FLOW, "awaiting_voucher", {"product_id": 3, "quantity": 2})

    assert state.get_state(1, CHECKOUT_FLOW) == {
        "step": "awaiting_voucher",
        "data": {"product_id": 3, "quantity": 2},
    }
    assert 0 < fake_redis.ttl("store:session:checkout:1") <= SessionStateManager.TTL_SECONDS

    state.clear_state(1, CHECKOUT_FLOW)
    assert state.get_state(1, CHECKOUT_FLOW) is None


def test_flows_do_not_collide(state):
    state.set_state(1, CHECKOUT_FLOW, "awaiting_notes")
    state.set_state(1, TOPUP_FLOW, "awaiting_amount")

    state.clear_state(1, TOPUP_FLOW)

    assert state.get_state(1, CHECKOUT_FLOW)["step"] == "awaiting_notes"


def test_update_data(state):
    assert state.update_data(1, CHECKOUT_FLOW, "voucher", "HEMAT") is False

    state.set_state(1, CHECKOUT_FLOW, "awaiting_voucher", {"product_id": 3})
    assert state.update_data(1, CHECKOUT_FLOW, "voucher", "HEMAT") is True

    assert state.get_state(1, CHECKOUT_FLOW)["data"] == {"product_id": 3, "voucher": "HEMAT"}


def test_active_flow_priority(state):
    assert state.active_flow(1) == (None, None)

    state.set_state(1, CHECKOUT_FLOW, "awaiting_notes")
    state.set_state(1, ADMIN_FLOW, "awaiting_stock", {"product_id": 9})

    flow, current = state.active_flow(1)

    assert flow == ADMIN_FLOW
    assert current["data"]["product_id"] == 9
