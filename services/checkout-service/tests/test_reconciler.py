"""
Callback reconciliation: terminal transitions, idempotence, amount checks
and concurrent delivery of the same callback.
"""
import threading
from datetime import datetime

import pytest

from checkout.coordinator import ACK_OK, ACK_WITH_ISSUES
from checkout.errors import AmountMismatchError, MalformedCallbackError, NotFoundError
from checkout.reconciler import flatten_metadata, parse_callback, parse_transaction_date


def _state(store, order_id):
    order = store.get_order(order_id)
    txn = store.get_pending_transaction(order_id)
    return {
        "order": (order.status, order.payment_status),
        "payment": (order.payment.status, order.payment.transaction_reference, order.payment.failure_reason),
        "txn": (txn.status, txn.mpesa_receipt_number, txn.result_code, txn.result_description),
    }


class TestParsing:
    def test_flatten_metadata(self):
        items = [{"Name": "Amount", "Value": 1.0}, {"Name": "Balance"}, {"Value": "orphan"}]
        assert flatten_metadata(items) == {"Amount": 1.0, "Balance": None}

    def test_parse_success_callback(self, make_callback):
        cb = parse_callback(make_callback("MPESA_1_1"))
        assert cb.checkout_request_id == "MPESA_1_1"
        assert cb.succeeded
        assert len(cb.items) == 5

    def test_result_code_may_be_a_string(self, make_callback):
        body = make_callback("MPESA_1_1", result_code=1032)
        body["Body"]["stkCallback"]["ResultCode"] = "1032"
        cb = parse_callback(body)
        assert cb.result_code == 1032
        assert not cb.succeeded
        assert cb.items == []

    def test_result_description_alias(self):
        body = {"Body": {"stkCallback": {"CheckoutRequestID": "X", "ResultCode": 1, "ResultDescription": "nope"}}}
        assert parse_callback(body).result_description == "nope"

    @pytest.mark.parametrize(
        "body",
        [
            None,
            {},
            {"Body": "junk"},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "X"}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "X", "ResultCode": "zero"}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "X", "ResultCode": 0, "CallbackMetadata": {"Item": "x"}}}},
        ],
    )
    def test_malformed(self, body):
        with pytest.raises(MalformedCallbackError):
            parse_callback(body)

    def test_transaction_date(self):
        assert parse_transaction_date(20191219102115) == datetime(2019, 12, 19, 10, 21, 15)
        assert parse_transaction_date("garbage") is None
        assert parse_transaction_date(None) is None


class TestReconcile:
    def test_success_callback(self, coordinator, store, mpesa_checkout, make_callback, published):
        result = coordinator.checkout(mpesa_checkout)

        ack = coordinator.handle_callback(make_callback(result.checkout_request_id))

        assert ack == ACK_OK
        assert _state(store, result.order_id) == {
            "order": ("completed", "paid"),
            "payment": ("completed", "NLJ7RT61SV", None),
            "txn": ("completed", "NLJ7RT61SV", 0, "The service request is processed successfully."),
        }
        txn = store.get_pending_transaction(result.order_id)
        assert txn.transaction_date == datetime(2019, 12, 19, 10, 21, 15)
        assert store.get_order(result.order_id).payment.payment_reference == result.checkout_request_id
        assert [e for e, _ in published] == ["payment.completed"]
        assert published[0][1]["order_id"] == result.order_id

    def test_failure_callback(self, coordinator, store, mpesa_checkout, make_callback, published):
        result = coordinator.checkout(mpesa_checkout)

        ack = coordinator.handle_callback(make_callback(result.checkout_request_id, result_code=1))

        assert ack == ACK_OK
        assert _state(store, result.order_id) == {
            "order": ("failed", "failed"),
            "payment": ("failed", None, "Request cancelled by user"),
            "txn": ("failed", None, 1, "Request cancelled by user"),
        }
        assert [e for e, _ in published] == ["payment.failed"]

    def test_amount_given_as_float_matches(self, coordinator, store, mpesa_checkout, make_callback):
        result = coordinator.checkout(mpesa_checkout)
        outcome = coordinator.reconcile(make_callback(result.checkout_request_id, amount=1000.0))
        assert outcome.applied
        assert outcome.status == "completed"

    def test_replayed_success_is_a_noop(self, coordinator, store, mpesa_checkout, make_callback, published):
        result = coordinator.checkout(mpesa_checkout)
        body = make_callback(result.checkout_request_id)

        first_ack = coordinator.handle_callback(body)
        first_state = _state(store, result.order_id)
        second_ack = coordinator.handle_callback(body)

        assert first_ack == second_ack == ACK_OK
        assert _state(store, result.order_id) == first_state
        assert len(published) == 1

    def test_terminal_outcome_is_never_rederived(self, coordinator, store, mpesa_checkout, make_callback):
        result = coordinator.checkout(mpesa_checkout)
        coordinator.handle_callback(make_callback(result.checkout_request_id))

        outcome = coordinator.reconcile(make_callback(result.checkout_request_id, result_code=1))

        assert not outcome.applied
        assert outcome.status == "completed"
        assert _state(store, result.order_id)["order"] == ("completed", "paid")

    def test_failed_then_success_stays_failed(self, coordinator, store, mpesa_checkout, make_callback):
        result = coordinator.checkout(mpesa_checkout)
        coordinator.handle_callback(make_callback(result.checkout_request_id, result_code=1032))
        coordinator.handle_callback(make_callback(result.checkout_request_id))

        assert _state(store, result.order_id)["order"] == ("failed", "failed")

    @pytest.mark.parametrize("amount", [1, 999, "1000.01", "abc", None])
    def test_amount_mismatch_never_completes(self, coordinator, store, mpesa_checkout, make_callback, published, amount):
        result = coordinator.checkout(mpesa_checkout)
        body = make_callback(result.checkout_request_id, amount=amount)
        if amount is None:
            items = body["Body"]["stkCallback"]["CallbackMetadata"]["Item"]
            body["Body"]["stkCallback"]["CallbackMetadata"]["Item"] = [i for i in items if i["Name"] != "Amount"]

        with pytest.raises(AmountMismatchError):
            coordinator.reconcile(body)
        assert coordinator.handle_callback(body) == ACK_WITH_ISSUES

        assert _state(store, result.order_id) == {
            "order": ("processing", "unpaid"),
            "payment": ("initiated", None, None),
            "txn": ("initiated", None, None, None),
        }
        assert published == []

    @pytest.mark.parametrize("receipt", [None, ""])
    def test_success_without_receipt_is_rejected(self, coordinator, store, mpesa_checkout, make_callback, published, receipt):
        result = coordinator.checkout(mpesa_checkout)
        body = make_callback(result.checkout_request_id)
        items = body["Body"]["stkCallback"]["CallbackMetadata"]["Item"]
        if receipt is None:
            items[:] = [i for i in items if i["Name"] != "MpesaReceiptNumber"]
        else:
            next(i for i in items if i["Name"] == "MpesaReceiptNumber")["Value"] = receipt

        with pytest.raises(MalformedCallbackError, match="receipt"):
            coordinator.reconcile(body)
        assert coordinator.handle_callback(body) == ACK_WITH_ISSUES

        assert _state(store, result.order_id) == {
            "order": ("processing", "unpaid"),
            "payment": ("initiated", None, None),
            "txn": ("initiated", None, None, None),
        }
        assert published == []

    @pytest.mark.parametrize("amount", [1, "1000.01", "abc"])
    def test_failure_with_mismatched_amount_is_rejected(self, coordinator, store, mpesa_checkout, make_callback, published, amount):
        result = coordinator.checkout(mpesa_checkout)
        body = make_callback(result.checkout_request_id, result_code=1032)
        body["Body"]["stkCallback"]["CallbackMetadata"] = {"Item": [{"Name": "Amount", "Value": amount}]}

        with pytest.raises(AmountMismatchError):
            coordinator.reconcile(body)

        assert _state(store, result.order_id)["order"] == ("processing", "unpaid")
        assert store.get_pending_transaction(result.order_id).status == "initiated"
        assert published == []

    def test_failure_with_matching_amount_applies(self, coordinator, store, mpesa_checkout, make_callback):
        result = coordinator.checkout(mpesa_checkout)
        body = make_callback(result.checkout_request_id, result_code=1032)
        body["Body"]["stkCallback"]["CallbackMetadata"] = {"Item": [{"Name": "Amount", "Value": 1000}]}

        outcome = coordinator.reconcile(body)

        assert outcome.applied
        assert _state(store, result.order_id)["order"] == ("failed", "failed")

    def test_unknown_token(self,coordinator, make_callback, mpesa_checkout, store):
        result = coordinator.checkout(mpesa_checkout)

        with pytest.raises(NotFoundError):
            coordinator.reconcile(make_callback("MPESA_forged_1"))
        assert coordinator.handle_callback(make_callback("MPESA_forged_1")) == ACK_WITH_ISSUES

        assert _state(store, result.order_id)["order"] == ("processing", "unpaid")

    def test_malformed_callback_is_acknowledged(self, coordinator):
        assert coordinator.handle_callback({"Body": {"stkCallback": {}}}) == ACK_WITH_ISSUES
        assert coordinator.handle_callback("not even a dict") == ACK_WITH_ISSUES

    def test_ack_is_a_fresh_copy(self, coordinator):
        ack = coordinator.handle_callback({})
        ack["ResultDesc"] = "mutated"
        assert coordinator.handle_callback({}) == ACK_WITH_ISSUES


@pytest.mark.race
def test_concurrent_duplicate_callbacks_apply_once(coordinator, store, mpesa_checkout, make_callback, published):
    result = coordinator.checkout(mpesa_checkout)
    body = make_callback(result.checkout_request_id)

    start = threading.Barrier(4)
    outcomes, errors = [], []

    def deliver():
        start.wait()
        try:
            outcomes.append(coordinator.reconcile(body))
        except Exception as e:  # surfaced via the assertion below
            errors.append(e)

    threads = [threading.Thread(target=deliver) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert sorted(o.applied for o in outcomes) == [False, False, False, True]
    assert {o.status for o in outcomes} == {"completed"}
    assert len(published) == 1
    assert _state(store, result.order_id)["order"] == ("completed", "paid")
