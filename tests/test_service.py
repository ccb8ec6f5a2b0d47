"""Tests for the result-returning custody facade."""
import logging

import pytest
import pytest_asyncio

from quorum_custody.interfaces import IdentityProvider, StaticIdentityProvider
from quorum_custody.service import CustodyService, OperationResult
from quorum_custody.exceptions import WalletSuspended


class BrokenIdentityProvider(IdentityProvider):
    async def resolve(self, token: str) -> str:
        raise RuntimeError("identity backend crashed")


TOKENS = {"tok-alice": "alice", "tok-bob": "bob", "tok-carol": "carol", "tok-dave": "dave"}


@pytest.fixture
def service(ledger, settings, clock):
    return CustodyService(ledger=ledger, identity=StaticIdentityProvider(TOKENS), settings=settings, clock=clock)


@pytest_asyncio.fixture
async def wallet_id(service, members):
    result = await service.create_wallet(
        "tok-alice",
        [
            members["alice"].as_participant("admin"),
            members["bob"].as_participant(),
            members["carol"].as_participant(),
        ],
        threshold=2,
        name="Treasury",
    )
    assert result.success, result.error
    return result.data["wallet_id"]


async def _sign(service, members, transaction_id, name):
    payload = (await service.get_signing_payload(f"tok-{name}", transaction_id)).data["payload"]
    member = members[name]
    return await service.sign_transaction(
        f"tok-{name}", transaction_id, member.public_key, member.sign(payload.encode())
    )


class TestOperationResult:
    """Tests for the result envelope."""

    def test_ok(self):
        assert OperationResult.ok({"a": 1}).to_dict() == {"success": True, "data": {"a": 1}, "error": None}

    def test_fail_carries_structured_error(self):
        result = OperationResult.fail(WalletSuspended("msw_1", "suspended"))
        data = result.to_dict()
        assert not data["success"]
        assert data["error"]["kind"] == "state_error"
        assert data["error"]["http_status"] == 409


class TestCustodyService:
    """End-to-end flows through the facade."""

    @pytest.mark.asyncio
    async def test_create_wallet_records_creator(self, service, wallet_id):
        result = await service.get_wallet("tok-bob", wallet_id)
        assert result.success
        assert result.data["created_by"] == "alice"
        assert result.data["threshold"] == 2

    @pytest.mark.asyncio
    async def test_payment_flow(self, service, members, ledger, wallet_id):
        proposed = await service.propose_transaction(
            "tok-bob", wallet_id, "payment", {"recipient": "GDEST", "amount": "12.5"}
        )
        assert proposed.success
        tx_id = proposed.data["transaction_id"]

        first = await _sign(service, members, tx_id, "alice")
        assert first.data["status"] == "proposed"
        second = await _sign(service, members, tx_id, "carol")
        assert second.data["just_approved"]

        executed = await service.execute_transaction("tok-bob", tx_id, idempotency_key="exec-1")
        assert executed.success
        assert executed.data["status"] == "executed"

        replay = await service.execute_transaction("tok-bob", tx_id, idempotency_key="exec-1")
        assert replay.success
        assert len(ledger.submitted) == 1

        stats = await service.get_transaction_stats("tok-carol", wallet_id)
        assert stats.success

        chain = await service.verify_audit_chain("tok-alice", wallet_id)
        assert chain.data["valid"]

    @pytest.mark.asyncio
    async def test_execute_before_approval(self, service, wallet_id):
        proposed = await service.propose_transaction(
            "tok-bob", wallet_id, "payment", {"recipient": "GDEST", "amount": "1"}
        )
        result = await service.execute_transaction("tok-bob", proposed.data["transaction_id"])
        assert not result.success
        assert result.error.code == "NOT_APPROVED"
        assert result.error.kind == "state_error"

    @pytest.mark.asyncio
    async def test_invalid_token(self, service, wallet_id):
        result = await service.get_wallet("tok-unknown", wallet_id)
        assert not result.success
        assert result.error.code == "INVALID_TOKEN"
        assert result.error.http_status == 403

    @pytest.mark.asyncio
    async def test_reads_require_membership(self, service, wallet_id):
        result = await service.list_transactions("tok-dave", wallet_id)
        assert result.error.code == "NOT_PARTICIPANT"

    @pytest.mark.asyncio
    async def test_not_found(self, service):
        result = await service.get_transaction("tok-alice", "tx_missing")
        assert result.error.kind == "not_found_error"
        assert result.error.http_status == 404

    @pytest.mark.asyncio
    async def test_admin_operations(self, service, wallet_id):
        denied = await service.suspend_wallet("tok-bob", wallet_id)
        assert denied.error.code == "NOT_ADMIN"

        suspended = await service.suspend_wallet("tok-alice", wallet_id)
        assert suspended.data["status"] == "suspended"

        blocked = await service.propose_transaction(
            "tok-bob", wallet_id, "payment", {"recipient": "GDEST", "amount": "1"}
        )
        assert blocked.error.kind == "state_error"

        activated = await service.activate_wallet("tok-alice", wallet_id)
        assert activated.data["status"] == "active"

    @pytest.mark.asyncio
    async def test_deposit_with_auto_split(self, service, wallet_id):
        rule = await service.create_rule(
            "tok-alice",
            wallet_id,
            {
                "name": "Revenue share",
                "rule_type": "percentage",
                "split_configuration": {
                    "recipients": [
                        {"address": "GA", "percentage": "60"},
                        {"address": "GB", "percentage": "40"},
                    ]
                },
                "advanced_settings": {"auto_execute": True},
            },
        )
        assert rule.success

        deposit = await service.register_deposit("tok-bob", wallet_id, "100.000001", "GSOURCE", "0xabc")
        confirmed = await service.confirm_deposit("tok-bob", deposit.data["deposit_id"], 812, 3)

        assert confirmed.success
        distribution = confirmed.data["distribution"]
        assert distribution["total_distributed"] == "100.000001"
        assert len(distribution["allocations"][0]["transaction_ids"]) == 2

        divisions = await service.list_transactions("tok-carol", wallet_id, transaction_type="division")
        assert len(divisions.data) == 2

        stats = await service.get_rule_statistics("tok-carol", rule.data["rule_id"])
        assert stats.data["successful_executions"] == 1

    @pytest.mark.asyncio
    async def test_manual_evaluation_is_admin_only(self, service, wallet_id):
        denied = await service.evaluate_rules("tok-bob", wallet_id, "100", "manual_trigger")
        assert denied.error.code == "NOT_ADMIN"

        allowed = await service.evaluate_rules("tok-alice", wallet_id, "100", "manual_trigger")
        assert allowed.success

    @pytest.mark.asyncio
    @pytest.mark.parametrize("trigger_event", ["deposit", "payment_received"])
    async def test_deposit_triggers_cannot_be_fired_by_hand(self, service, wallet_id, trigger_event):
        result = await service.evaluate_rules("tok-alice", wallet_id, "100", trigger_event)
        assert result.error.kind == "validation_error"
        assert result.error.details["field"] == "trigger_event"

        divisions = await service.list_transactions("tok-alice", wallet_id, transaction_type="division")
        assert divisions.data == []

    @pytest.mark.asyncio
    async def test_rule_validation_error(self, service, wallet_id):
        result = await service.create_rule(
            "tok-alice", wallet_id, {"name": "Bad", "rule_type": "percentage", "split_configuration": {}}
        )
        assert result.error.kind == "validation_error"
        assert result.error.http_status == 400
        assert result.error.details["errors"]

    @pytest.mark.asyncio
    async def test_reconcile_requires_admin(self, service, wallet_id):
        assert (await service.reconcile("tok-bob", wallet_id)).error.code == "NOT_ADMIN"
        report = await service.reconcile("tok-alice", wallet_id)
        assert report.success
        assert report.data["unresolved_count"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_wrapped(self, ledger, settings, clock, caplog):
        service = CustodyService(ledger=ledger, identity=BrokenIdentityProvider(), settings=settings, clock=clock)

        with caplog.at_level(logging.ERROR, logger="quorum_custody.service"):
            result = await service.get_wallet("tok-alice", "msw_1")

        assert not result.success
        assert result.error.code == "INTERNAL_ERROR"
        assert "crashed" not in result.error.message
        record = next(r for r in caplog.records if r.name == "quorum_custody.service")
        assert record.failed_operation == "get_wallet"
        assert record.entity_id == "msw_1"
        assert record.exc_info is not None
