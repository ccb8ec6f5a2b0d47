"""
Fund split rule engine.

Evaluates a wallet's distribution rules against an incoming amount and
produces a DistributionPlan. Rules flagged ``auto_execute`` additionally
create one ``division`` proposal per non-zero share and append an entry to
their execution history.

Evaluation order is (priority, created_at), lower priority first. Which
rules fire is governed by ``split_rule_policy``:

- first_match: the first eligible exclusive rule fires; rules marked
  ``exclusive=False`` fire as well
- all_matching: every eligible rule fires

Each rule that fires works on what earlier rules left undistributed.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .audit_log import AuditAction, AuditCategory, AuditLogger
from .config import QuorumSettings, get_settings
from .exceptions import InsufficientAmount, QuorumException, QuorumValidationError
from .interfaces import NotificationService, send_notification
from .repository import EntityLocks, EntityStore, InMemoryEntityStore
from .transactions import TransactionStateMachine, TransactionType, to_plain, validate_amount
from .wallets import MultisigWallet, WalletRegistry

logger = logging.getLogger(__name__)

RULE_LOCK = "fund_split_rule"
EVALUATION_LOCK = "fund_split_wallet"
DAY = timedelta(hours=24)


class RuleType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    PRIORITY_BASED = "priority_based"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class TriggerEvent(str, Enum):
    DEPOSIT = "deposit"
    PAYMENT_RECEIVED = "payment_received"
    MANUAL_TRIGGER = "manual_trigger"
    SCHEDULED = "scheduled"


class ExecutionOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


# =============================================================================
# Rule definition schemas
# =============================================================================

class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class RecipientConfig(_Schema):
    address: str = Field(min_length=1, max_length=256)
    percentage: Optional[Decimal] = Field(default=None, gt=0, le=100)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    priority: Optional[int] = Field(default=None, ge=1, le=100)
    cap: Optional[Decimal] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=500)


class SplitConfiguration(_Schema):
    recipients: List[RecipientConfig] = Field(min_length=1)
    remainder_recipient: Optional[str] = None


class RuleConditions(_Schema):
    min_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_amount: Optional[Decimal] = Field(default=None, ge=0)
    trigger_events: List[TriggerEvent] = Field(
        default_factory=lambda: [TriggerEvent.DEPOSIT], min_length=1
    )

    @model_validator(mode="after")
    def check_range(self) -> "RuleConditions":
        if self.min_amount is not None and self.max_amount is not None and self.min_amount > self.max_amount:
            raise ValueError("min_amount must not exceed max_amount")
        return self

    def matches(self, amount: Decimal, trigger_event: TriggerEvent) -> bool:
        if trigger_event not in self.trigger_events:
            return False
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True


class AdvancedSettings(_Schema):
    auto_execute: bool = False
    max_executions_per_day: Optional[int] = Field(default=None, ge=1, le=1000)
    cooldown_period: int = Field(default=0, ge=0)
    notify_on_execution: bool = False
    notify_on_failure: bool = True
    exclusive: bool = True


class RuleDefinition(_Schema):
    """User-editable part of a fund split rule."""
    name: str = Field(min_length=3, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    rule_type: RuleType
    priority: int = Field(default=1, ge=1, le=100)
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    split_configuration: SplitConfiguration
    advanced_settings: AdvancedSettings = Field(default_factory=AdvancedSettings)

    @model_validator(mode="after")
    def check_split_shape(self) -> "RuleDefinition":
        recipients = self.split_configuration.recipients
        addresses = [r.address for r in recipients]
        if len(set(addresses)) != len(addresses):
            raise ValueError("Recipient addresses must be unique")

        if self.rule_type == RuleType.PERCENTAGE:
            if any(r.percentage is None for r in recipients):
                raise ValueError("Every recipient of a percentage rule needs a percentage")
            if sum(r.percentage for r in recipients) > 100:
                raise ValueError("Percentage shares must sum to at most 100")
        elif self.rule_type == RuleType.FIXED_AMOUNT:
            if any(r.amount is None for r in recipients):
                raise ValueError("Every recipient of a fixed_amount rule needs an amount")
        elif self.rule_type == RuleType.PRIORITY_BASED:
            if any(r.priority is None for r in recipients):
                raise ValueError("Every recipient of a priority_based rule needs a priority")

        remainder = self.split_configuration.remainder_recipient
        if remainder is not None and remainder not in addresses:
            raise ValueError("remainder_recipient must be one of the recipients")
        return self


def parse_definition(data: Union[RuleDefinition, Dict[str, Any]], settings: QuorumSettings) -> RuleDefinition:
    if isinstance(data, RuleDefinition):
        definition = data
    else:
        try:
            definition = RuleDefinition.model_validate(data or {})
        except ValidationError as e:
            raise QuorumValidationError(
                "Invalid fund split rule",
                details={
                    "errors": [
                        {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
                        for err in e.errors()
                    ]
                },
            ) from None

    for recipient in definition.split_configuration.recipients:
        if recipient.amount is not None:
            validate_amount(recipient.amount, settings, field_name="split_configuration.recipients.amount")
        if recipient.cap is not None:
            validate_amount(recipient.cap, settings, field_name="split_configuration.recipients.cap")
    return definition


# =============================================================================
# Entities
# =============================================================================

@dataclass
class ExecutionRecord:
    """One append-only execution history entry."""
    executed_at: datetime
    triggering_amount: Decimal
    trigger_event: TriggerEvent
    distribution: List[Dict[str, Any]]
    outcome: ExecutionOutcome
    transaction_ids: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def distributed(self) -> Decimal:
        return sum((Decimal(d["amount"]) for d in self.distribution), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executed_at": self.executed_at.isoformat(),
            "triggering_amount": str(self.triggering_amount),
            "trigger_event": self.trigger_event.value,
            "distribution": self.distribution,
            "outcome": self.outcome.value,
            "transaction_ids": list(self.transaction_ids),
            "error": self.error,
        }


@dataclass
class FundSplitRule:
    rule_id: str
    wallet_id: str
    name: str
    rule_type: RuleType
    split_configuration: SplitConfiguration
    description: Optional[str] = None
    priority: int = 1
    conditions: RuleConditions = field(default_factory=RuleConditions)
    advanced_settings: AdvancedSettings = field(default_factory=AdvancedSettings)
    status: RuleStatus = RuleStatus.ACTIVE
    execution_history: List[ExecutionRecord] = field(default_factory=list)
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_executed_at: Optional[datetime] = None
    version: int = 0

    def definition(self) -> RuleDefinition:
        return RuleDefinition(
            name=self.name,
            description=self.description,
            rule_type=self.rule_type,
            priority=self.priority,
            conditions=self.conditions,
            split_configuration=self.split_configuration,
            advanced_settings=self.advanced_settings,
        )

    def apply(self, definition: RuleDefinition) -> None:
        self.name = definition.name
        self.description = definition.description
        self.rule_type = definition.rule_type
        self.priority = definition.priority
        self.conditions = definition.conditions
        self.split_configuration = definition.split_configuration
        self.advanced_settings = definition.advanced_settings

    def successful_executions_since(self, since: datetime) -> int:
        return sum(
            1 for r in self.execution_history
            if r.outcome == ExecutionOutcome.SUCCESS and r.executed_at > since
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "wallet_id": self.wallet_id,
            **self.definition().model_dump(mode="json"),
            "status": self.status.value,
            "execution_history": [r.to_dict() for r in self.execution_history],
            "created_by": self.created_by,
            "last_modified_by": self.last_modified_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
            "version": self.version,
        }


@dataclass
class Share:
    recipient: str
    amount: Decimal
    description: Optional[str] = None
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "amount": str(self.amount),
            "description": self.description,
            "transaction_id": self.transaction_id,
        }


@dataclass
class RuleAllocation:
    """Shares produced by one rule."""
    rule_id: str
    rule_name: str
    rule_type: RuleType
    input_amount: Decimal
    shares: List[Share]
    retained: Decimal
    auto_execute: bool = False
    executed: bool = False
    transaction_ids: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def distributed(self) -> Decimal:
        return sum((s.amount for s in self.shares), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "rule_type": self.rule_type.value,
            "input_amount": str(self.input_amount),
            "shares": [s.to_dict() for s in self.shares],
            "distributed": str(self.distributed),
            "retained": str(self.retained),
            "auto_execute": self.auto_execute,
            "executed": self.executed,
            "transaction_ids": list(self.transaction_ids),
            "error": self.error,
        }


@dataclass
class DistributionPlan:
    wallet_id: str
    amount: Decimal
    trigger_event: TriggerEvent
    policy: str
    allocations: List[RuleAllocation] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)
    remaining: Decimal = Decimal("0")
    simulated: bool = False
    would_execute: Optional[bool] = None

    @property
    def total_distributed(self) -> Decimal:
        return sum((a.distributed for a in self.allocations), Decimal("0"))

    @property
    def transaction_ids(self) -> List[str]:
        return [tx_id for a in self.allocations for tx_id in a.transaction_ids]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet_id": self.wallet_id,
            "amount": str(self.amount),
            "trigger_event": self.trigger_event.value,
            "policy": self.policy,
            "allocations": [a.to_dict() for a in self.allocations],
            "skipped": list(self.skipped),
            "total_distributed": str(self.total_distributed),
            "remaining": str(self.remaining),
            "simulated": self.simulated,
            "would_execute": self.would_execute,
        }


# =============================================================================
# Share computation
# =============================================================================

def compute_allocation(rule: FundSplitRule, amount: Decimal, quantum: Decimal) -> RuleAllocation:
    """Split ``amount`` according to ``rule``. Pure, mutates nothing.

    Percentage shares are rounded down to ``quantum``; the rounding
    remainder goes to the remainder recipient, or the first configured
    recipient when none is set. ``sum(shares) + retained == amount``.
    """
    recipients = rule.split_configuration.recipients

    if rule.rule_type == RuleType.PERCENTAGE:
        shares = [
            Share(r.address, (amount * r.percentage / 100).quantize(quantum, rounding=ROUND_DOWN), r.description)
            for r in recipients
        ]
        total_percentage = sum(r.percentage for r in recipients)
        target = (amount * total_percentage / 100).quantize(quantum, rounding=ROUND_DOWN)
        remainder = target - sum(s.amount for s in shares)
        if remainder:
            receiver = rule.split_configuration.remainder_recipient or recipients[0].address
            for share in shares:
                if share.recipient == receiver:
                    share.amount += remainder
                    break
        retained = amount - target

    elif rule.rule_type == RuleType.FIXED_AMOUNT:
        required = sum(r.amount for r in recipients)
        if required > amount:
            raise InsufficientAmount(rule.rule_id, str(required), str(amount))
        shares = [Share(r.address, r.amount, r.description) for r in recipients]
        retained = amount - required

    else:
        ordered = sorted(enumerate(recipients), key=lambda item: (item[1].priority, item[0]))
        left = amount
        shares = []
        for _, r in ordered:
            share = left if r.cap is None else min(r.cap, left)
            shares.append(Share(r.address, share, r.description))
            left -= share
        retained = left

    return RuleAllocation(
        rule_id=rule.rule_id,
        rule_name=rule.name,
        rule_type=rule.rule_type,
        input_amount=amount,
        shares=shares,
        retained=retained,
        auto_execute=rule.advanced_settings.auto_execute,
    )


# =============================================================================
# Engine
# =============================================================================

class FundSplitEngine:
    """
    Distribution rules per wallet: CRUD, evaluation and dry-run simulation.

    Usage:
        engine = FundSplitEngine(wallets=registry, transactions=machine)
        rule = await engine.create_rule(wallet_id, {
            "name": "Revenue share",
            "rule_type": "percentage",
            "split_configuration": {"recipients": [
                {"address": "GA..", "percentage": "60"},
                {"address": "GB..", "percentage": "40"},
            ]},
            "advanced_settings": {"auto_execute": True},
        }, actor="alice")
        plan = await engine.evaluate(wallet_id, Decimal("100"), "deposit")
    """

    def __init__(
        self,
        wallets: WalletRegistry,
        transactions: TransactionStateMachine,
        store: Optional[EntityStore[FundSplitRule]] = None,
        locks: Optional[EntityLocks] = None,
        settings: Optional[QuorumSettings] = None,
        audit: Optional[AuditLogger] = None,
        notifier: Optional[NotificationService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._wallets = wallets
        self._transactions = transactions
        self._store = store or InMemoryEntityStore("FundSplitRule", "rule_id")
        self._locks = locks or EntityLocks()
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._audit = audit or AuditLogger(clock=self._clock)
        self._notifier = notifier

    @staticmethod
    def _parse_trigger(trigger_event: Union[TriggerEvent, str]) -> TriggerEvent:
        try:
            return TriggerEvent(trigger_event)
        except ValueError:
            raise QuorumValidationError(
                f"Unknown trigger event: {trigger_event}", field="trigger_event"
            ) from None

    async def _audit_rule(
        self,
        rule: FundSplitRule,
        action: AuditAction,
        actor: Optional[str],
        old_status: Optional[RuleStatus] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._audit.log(
            wallet_id=rule.wallet_id,
            category=AuditCategory.FUND_SPLIT,
            action=action,
            actor_id=actor,
            resource_type="fund_split_rule",
            resource_id=rule.rule_id,
            old_status=old_status.value if old_status else None,
            new_status=rule.status.value,
            details=details,
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_rule(
        self,
        wallet_id: str,
        definition: Union[RuleDefinition, Dict[str, Any]],
        actor: Optional[str],
    ) -> FundSplitRule:
        await self._wallets.require_admin(wallet_id, actor)
        parsed = parse_definition(definition, self._settings)

        now = self._clock()
        rule = FundSplitRule(
            rule_id=f"rule_{secrets.token_hex(8)}",
            wallet_id=wallet_id,
            name=parsed.name,
            rule_type=parsed.rule_type,
            split_configuration=parsed.split_configuration,
            created_by=actor,
            last_modified_by=actor,
            created_at=now,
            updated_at=now,
        )
        rule.apply(parsed)
        await self._store.create(rule)
        await self._audit_rule(rule, AuditAction.RULE_CREATED, actor, details={"name": rule.name})
        logger.info(f"Created {rule.rule_type.value} rule {rule.rule_id} on wallet {wallet_id}")
        return rule

    async def update_rule(self, rule_id: str, changes: Dict[str, Any], actor: Optional[str]) -> FundSplitRule:
        """Replace top-level definition fields (name, conditions, ...) and revalidate."""
        async with self._locks.get(RULE_LOCK, rule_id):
            rule = await self._store.require(rule_id)
            await self._wallets.require_admin(rule.wallet_id, actor)

            merged = {**rule.definition().model_dump(), **(changes or {})}
            rule.apply(parse_definition(merged, self._settings))
            rule.last_modified_by = actor
            rule.updated_at = self._clock()
            await self._store.update(rule, expected_version=rule.version)
            await self._audit_rule(
                rule, AuditAction.RULE_UPDATED, actor, details={"fields": sorted((changes or {}).keys())}
            )
            return rule

    async def delete_rule(self, rule_id: str, actor: Optional[str]) -> FundSplitRule:
        async with self._locks.get(RULE_LOCK, rule_id):
            rule = await self._store.require(rule_id)
            await self._wallets.require_admin(rule.wallet_id, actor)
            await self._store.delete(rule_id)
            await self._audit_rule(rule, AuditAction.RULE_DELETED, actor)
            logger.info(f"Deleted rule {rule_id}")
            return rule

    async def toggle_rule(
        self,
        rule_id: str,
        actor: Optional[str],
        status: Optional[Union[RuleStatus, str]] = None,
    ) -> FundSplitRule:
        """Flip active/inactive, or set an explicit status."""
        try:
            target = RuleStatus(status) if status is not None else None
        except ValueError:
            raise QuorumValidationError(f"Unknown rule status: {status}", field="status") from None

        async with self._locks.get(RULE_LOCK, rule_id):
            rule = await self._store.require(rule_id)
            await self._wallets.require_admin(rule.wallet_id, actor)
            if target is None:
                target = RuleStatus.INACTIVE if rule.status == RuleStatus.ACTIVE else RuleStatus.ACTIVE
            if target == rule.status:
                return rule

            previous = rule.status
            rule.status = target
            rule.last_modified_by = actor
            rule.updated_at = self._clock()
            await self._store.update(rule, expected_version=rule.version)
            await self._audit_rule(rule, AuditAction.RULE_STATUS_CHANGED, actor, old_status=previous)
            return rule

    async def get_rule(self, rule_id: str) -> FundSplitRule:
        return await self._store.require(rule_id)

    async def list_rules(
        self,
        wallet_id: str,
        status: Optional[Union[RuleStatus, str]] = None,
        rule_type: Optional[Union[RuleType, str]] = None,
    ) -> List[FundSplitRule]:
        """Rules of a wallet in evaluation order.

        Lower priority values first; among equal priorities the newest rule
        comes first.
        """
        try:
            status_filter = RuleStatus(status) if status is not None else None
            type_filter = RuleType(rule_type) if rule_type is not None else None
        except ValueError as e:
            raise QuorumValidationError(str(e)) from None

        rules = await self._store.list(
            lambda r: r.wallet_id == wallet_id
            and (status_filter is None or r.status == status_filter)
            and (type_filter is None or r.rule_type == type_filter)
        )
        rules.sort(key=lambda r: r.created_at, reverse=True)
        return sorted(rules, key=lambda r: r.priority)

    async def get_rule_statistics(self, rule_id: str) -> Dict[str, Any]:
        rule = await self._store.require(rule_id)
        history = rule.execution_history
        successes = [r for r in history if r.outcome == ExecutionOutcome.SUCCESS]
        now = self._clock()
        return {
            "rule_id": rule_id,
            "total_executions": len(history),
            "successful_executions": len(successes),
            "failed_executions": len(history) - len(successes),
            "success_rate": round(len(successes) / len(history) * 100, 2) if history else 0.0,
            "total_triggering_amount": str(sum((r.triggering_amount for r in successes), Decimal("0"))),
            "total_distributed": str(sum((r.distributed for r in successes), Decimal("0"))),
            "executions_last_24h": rule.successful_executions_since(now - DAY),
            "last_executed_at": rule.last_executed_at.isoformat() if rule.last_executed_at else None,
        }

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _ineligibility(self, rule: FundSplitRule, now: datetime) -> Optional[str]:
        settings = rule.advanced_settings
        if settings.cooldown_period and rule.last_executed_at is not None:
            if now < rule.last_executed_at + timedelta(seconds=settings.cooldown_period):
                return "cooldown"
        if settings.max_executions_per_day is not None:
            if rule.successful_executions_since(now - DAY) >= settings.max_executions_per_day:
                return "daily_limit"
        return None

    async def has_auto_rules(self, wallet_id: str, trigger_event: Union[TriggerEvent, str]) -> bool:
        trigger = self._parse_trigger(trigger_event)
        rules = await self.list_rules(wallet_id, status=RuleStatus.ACTIVE)
        return any(
            r.advanced_settings.auto_execute and trigger in r.conditions.trigger_events
            for r in rules
        )

    async def evaluate(
        self,
        wallet_id: str,
        amount: Union[Decimal, str],
        trigger_event: Union[TriggerEvent, str] = TriggerEvent.DEPOSIT,
        deposit_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> DistributionPlan:
        """Compute the distribution for ``amount`` and run auto-executing rules.

        Raises:
            InsufficientAmount: A fixed_amount rule needs more than is left
        """
        trigger = self._parse_trigger(trigger_event)
        value = validate_amount(amount, self._settings)
        wallet = await self._wallets.get_wallet(wallet_id)
        quantum = self._settings.amount_quantum
        policy = self._settings.split_rule_policy

        async with self._locks.get(EVALUATION_LOCK, wallet_id):
            now = self._clock()
            active = await self.list_rules(wallet_id, status=RuleStatus.ACTIVE)
            candidates = [r for r in active if r.conditions.matches(value, trigger)]

            plan = DistributionPlan(wallet_id=wallet_id, amount=value, trigger_event=trigger, policy=policy)
            remaining = value
            exclusive_fired = False
            fired: List[FundSplitRule] = []

            for rule in candidates:
                exclusive = rule.advanced_settings.exclusive
                if policy == "first_match" and exclusive and exclusive_fired:
                    plan.skipped.append({"rule_id": rule.rule_id, "reason": "exclusive_rule_fired"})
                    continue
                reason = self._ineligibility(rule, now)
                if reason is not None:
                    plan.skipped.append({"rule_id": rule.rule_id, "reason": reason})
                    continue
                if remaining <= 0:
                    plan.skipped.append({"rule_id": rule.rule_id, "reason": "nothing_left"})
                    continue

                try:
                    allocation = compute_allocation(rule, remaining, quantum)
                except InsufficientAmount as e:
                    if rule.advanced_settings.auto_execute:
                        await self._record_execution(
                            rule, remaining, trigger, [], ExecutionOutcome.FAILED, [], e.to_dict(), now
                        )
                    raise

                plan.allocations.append(allocation)
                fired.append(rule)
                remaining -= allocation.distributed
                if exclusive:
                    exclusive_fired = True

            plan.remaining = remaining

            for rule, allocation in zip(fired, plan.allocations):
                if allocation.auto_execute:
                    await self._execute_allocation(
                        wallet, rule, allocation, trigger, deposit_id, currency, now
                    )

        logger.info(
            f"Evaluated {len(candidates)} rule(s) for wallet {wallet_id}: "
            f"{len(plan.allocations)} fired, distributed {plan.total_distributed} of {value}"
        )
        return plan

    async def _execute_allocation(
        self,
        wallet: MultisigWallet,
        rule: FundSplitRule,
        allocation: RuleAllocation,
        trigger: TriggerEvent,
        deposit_id: Optional[str],
        currency: Optional[str],
        now: datetime,
    ) -> None:
        error: Optional[Dict[str, Any]] = None
        for share in allocation.shares:
            if share.amount <= 0:
                continue
            try:
                tx = await self._transactions.propose(
                    wallet.wallet_id,
                    TransactionType.DIVISION,
                    {
                        "recipient": share.recipient,
                        "amount": share.amount,
                        "currency": currency,
                        "rule_id": rule.rule_id,
                        "deposit_id": deposit_id,
                        "trigger_event": trigger.value,
                        "memo": f"Fund split: {rule.name}",
                    },
                    proposed_by=None,
                )
            except QuorumException as e:
                logger.error(f"Rule {rule.rule_id} could not propose share for {share.recipient}: {e.message}")
                error = e.to_dict()
                break
            share.transaction_id = tx.transaction_id
            allocation.transaction_ids.append(tx.transaction_id)

        outcome = ExecutionOutcome.SUCCESS if error is None else ExecutionOutcome.FAILED
        allocation.executed = error is None
        allocation.error = error
        distribution = [{"recipient": s.recipient, "amount": str(s.amount)} for s in allocation.shares]
        await self._record_execution(
            rule,
            allocation.input_amount,
            trigger,
            distribution,
            outcome,
            list(allocation.transaction_ids),
            error,
            now,
        )

    async def _record_execution(
        self,
        rule: FundSplitRule,
        triggering_amount: Decimal,
        trigger: TriggerEvent,
        distribution: List[Dict[str, Any]],
        outcome: ExecutionOutcome,
        transaction_ids: List[str],
        error: Optional[Dict[str, Any]],
        now: datetime,
    ) -> None:
        record = ExecutionRecord(
            executed_at=now,
            triggering_amount=triggering_amount,
            trigger_event=trigger,
            distribution=distribution,
            outcome=outcome,
            transaction_ids=transaction_ids,
            error=error,
        )
        async with self._locks.get(RULE_LOCK, rule.rule_id):
            current = await self._store.require(rule.rule_id)
            current.execution_history.append(record)
            if outcome == ExecutionOutcome.SUCCESS:
                current.last_executed_at = now
            await self._store.update(current, expected_version=current.version)

        await self._audit_rule(
            rule,
            AuditAction.RULE_EXECUTED,
            None,
            details={"outcome": outcome.value, "transaction_ids": transaction_ids, "amount": str(triggering_amount)},
        )
        settings = rule.advanced_settings
        if outcome == ExecutionOutcome.SUCCESS and settings.notify_on_execution:
            await send_notification(self._notifier, "fund_split_executed", rule.wallet_id, record.to_dict())
        elif outcome == ExecutionOutcome.FAILED and settings.notify_on_failure:
            await send_notification(self._notifier, "fund_split_failed", rule.wallet_id, record.to_dict())

    async def simulate(
        self,
        rule_id: str,
        amount: Union[Decimal, str],
    ) -> DistributionPlan:
        """Dry-run one rule. Creates no transactions and records no history."""
        rule = await self._store.require(rule_id)
        value = validate_amount(amount, self._settings)
        allocation = compute_allocation(rule, value, self._settings.amount_quantum)

        reason = self._ineligibility(rule, self._clock())
        plan = DistributionPlan(
            wallet_id=rule.wallet_id,
            amount=value,
            trigger_event=rule.conditions.trigger_events[0],
            policy=self._settings.split_rule_policy,
            allocations=[allocation],
            remaining=allocation.retained,
            simulated=True,
            would_execute=(
                rule.status == RuleStatus.ACTIVE
                and rule.advanced_settings.auto_execute
                and reason is None
            ),
        )
        if reason is not None:
            plan.skipped.append({"rule_id": rule_id, "reason": reason})
        return plan


__all__ = [
    "RuleType",
    "RuleStatus",
    "TriggerEvent",
    "ExecutionOutcome",
    "RecipientConfig",
    "SplitConfiguration",
    "RuleConditions",
    "AdvancedSettings",
    "RuleDefinition",
    "ExecutionRecord",
    "FundSplitRule",
    "Share",
    "RuleAllocation",
    "DistributionPlan",
    "FundSplitEngine",
    "compute_allocation",
    "parse_definition",
]
