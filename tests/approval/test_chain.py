"""
Tests for ApprovalChain.
"""

import asyncio

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from hitlflow.approval.chain import ApprovalChain
from hitlflow.approval.models import (
    ApprovalCondition,
    ApprovalLevel,
    ApprovalPolicy,
    Approver,
    ChainDecision,
    ChainHistoryEntry,
    ChainStatus,
    LevelDecision,
)
from hitlflow.communication.event_bus import EventBus
from hitlflow.communication.events import EventType
from hitlflow.exceptions import (
    ChainNotFoundError,
    InvalidStateError,
    RequestNotFoundError,
    ValidationError,
)


def _votes(level_id, *votes):
    return [
        ChainHistoryEntry(level_id=level_id, approver=Approver(id=approver), decision=decision)
        for approver, decision in votes
    ]


APPROVED = ChainDecision.APPROVED
REJECTED = ChainDecision.REJECTED


class TestApprovalChain:
    """Test cases for chain-scoped requests."""

    @pytest.fixture
    def event_bus(self):
        return EventBus()

    @pytest_asyncio.fixture
    async def chain(self, event_bus):
        chain = ApprovalChain(event_publisher=event_bus)
        yield chain
        await chain.shutdown()

    @pytest.fixture
    def two_level_chain(self, chain):
        chain.create_approval_chain("deploy", [
            {"id": "lead", "name": "Team Lead", "priority": 1, "approvers": ["alice"]},
            {
                "id": "director",
                "name": "Director",
                "priority": 2,
                "approvers": ["bob"],
                "conditions": [{"type": "confidence", "field": "confidence", "operator": "lt", "value": 0.6}],
            },
        ])
        return chain

    def test_levels_sorted_by_priority(self, chain):
        levels = chain.create_approval_chain("c", [
            ApprovalLevel(id="second", name="Second", priority=5),
            ApprovalLevel(id="first", name="First", priority=1),
        ])

        assert [level.id for level in levels] == ["first", "second"]
        assert [level.id for level in chain.get_chain("c")] == ["first", "second"]
        assert chain.list_chains() == ["c"]
        assert chain.get_chain("missing") is None

    @pytest.mark.asyncio
    async def test_conditional_level_included(self, two_level_chain, event_bus):
        """Test that a level whose conditions hold joins the chain."""
        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.5})

        assert len(request.chain) == 2
        assert request.current_level.id == "lead"
        assert request.status == ChainStatus.PENDING
        assert len(event_bus.events_of_type(EventType.APPROVAL_REQUESTED)) == 1

    @pytest.mark.asyncio
    async def test_conditional_level_skipped(self, two_level_chain):
        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.9})

        assert [level.id for level in request.chain] == ["lead"]

    @pytest.mark.asyncio
    async def test_auto_approval_when_no_level_applies(self, chain):
        """Test the single synthetic entry of an auto-approved request."""
        chain.create_approval_chain("risky", [{
            "id": "security",
            "name": "Security",
            "approvers": ["sec"],
            "conditions": [{"field": "risk_level", "operator": "gte", "value": "high"}],
        }])

        request = await chain.initiate_approval("e1", "risky", {"risk_level": "low"})

        assert request.status == ChainStatus.APPROVED
        assert len(request.history) == 1
        entry = request.history[0]
        assert entry.level_id == "auto"
        assert entry.approver.id == "system"
        assert entry.decision == ChainDecision.APPROVED
        assert entry.comments == "No approval required based on conditions"
        assert entry.automated is True
        assert chain.get_approval_request(request.id) is request

    @pytest.mark.asyncio
    async def test_unknown_chain(self, chain):
        with pytest.raises(ChainNotFoundError):
            await chain.initiate_approval("e1", "missing", {})

    @pytest.mark.asyncio
    async def test_approval_advances_then_finishes(self, two_level_chain, event_bus):
        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.5})

        await two_level_chain.process_approval(request.id, "alice", "approved", "Looks good")
        assert request.current_level.id == "director"
        assert request.is_pending

        await two_level_chain.process_approval(request.id, Approver(id="bob"), APPROVED)
        assert request.status == ChainStatus.APPROVED
        assert [e.level_id for e in request.history] == ["lead", "director"]
        assert len(event_bus.events_of_type(EventType.APPROVAL_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_rejection_terminates(self, two_level_chain):
        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.5})

        await two_level_chain.process_approval(request.id, "alice", REJECTED, "No")

        assert request.status == ChainStatus.REJECTED
        assert request.reason == "No"

    @pytest.mark.asyncio
    async def test_resolved_request_cannot_change(self, two_level_chain):
        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.9})
        await two_level_chain.process_approval(request.id, "alice", APPROVED)

        with pytest.raises(InvalidStateError):
            await two_level_chain.process_approval(request.id, "alice", REJECTED)
        assert len(request.history) == 1

    @pytest.mark.asyncio
    async def test_unknown_request_and_decision(self, two_level_chain):
        with pytest.raises(RequestNotFoundError):
            await two_level_chain.process_approval("chain-missing", "alice", APPROVED)

        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.9})
        with pytest.raises(ValidationError):
            await two_level_chain.process_approval(request.id, "alice", "maybe")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "policy_fields",
        [
            {"policy": "all"},
            {"policy": "any"},
            {"policy": "majority"},
            {"policy": "threshold", "threshold": 1},
        ],
    )
    async def test_votes_from_outside_the_level_are_refused(self, chain, policy_fields):
        chain.create_approval_chain("c", [
            {"id": "l1", "name": "Pair", "approvers": ["alice", "bob"], **policy_fields},
        ])
        request = await chain.initiate_approval("e1", "c")

        for outsider in ("mallory", "eve"):
            with pytest.raises(ValidationError):
                await chain.process_approval(request.id, outsider, APPROVED)

        assert request.status == ChainStatus.PENDING
        assert request.history == []

    @pytest.mark.asyncio
    async def test_level_without_approvers_is_open(self, chain):
        chain.create_approval_chain("c", [{"id": "l1", "name": "Anyone"}])
        request = await chain.initiate_approval("e1", "c")

        await chain.process_approval(request.id, "carol", APPROVED)

        assert request.status == ChainStatus.APPROVED

    @pytest.mark.asyncio
    async def test_escalation_moves_to_next_level(self, two_level_chain, event_bus):
        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.5})

        await two_level_chain.escalate(request.id, "alice", "Needs director")
        assert request.current_level.id == "director"
        assert request.is_pending

        await two_level_chain.escalate(request.id, "bob", "Above my pay grade")
        assert request.status == ChainStatus.ESCALATED
        assert len(event_bus.events_of_type(EventType.APPROVAL_ESCALATED)) == 2

    @pytest.mark.asyncio
    async def test_all_policy_waits_for_everyone(self, chain):
        chain.create_approval_chain("c", [
            {"id": "l1", "name": "Pair", "approvers": ["alice", "bob"], "policy": "all"},
        ])
        request = await chain.initiate_approval("e1", "c")

        await chain.process_approval(request.id, "alice", APPROVED)
        assert request.is_pending

        await chain.process_approval(request.id, "bob", APPROVED)
        assert request.status == ChainStatus.APPROVED

    @pytest.mark.asyncio
    async def test_repeated_vote_counts_once(self, chain):
        """Test that only the latest vote of an approver counts."""
        chain.create_approval_chain("c", [
            {"id": "l1", "name": "Pair", "approvers": ["alice", "bob"], "policy": "all"},
        ])
        request = await chain.initiate_approval("e1", "c")

        await chain.process_approval(request.id, "alice", APPROVED)
        await chain.process_approval(request.id, "alice", APPROVED)
        assert request.is_pending

        await chain.process_approval(request.id, "alice", REJECTED)
        assert request.status == ChainStatus.REJECTED

    @pytest.mark.asyncio
    async def test_level_timeout(self, chain):
        listener = AsyncMock()
        chain.add_listener(listener)
        chain.create_approval_chain("c", [
            {"id": "l1", "name": "Slow", "approvers": ["alice"], "timeout_ms": 20},
        ])
        request = await chain.initiate_approval("e1", "c")

        await asyncio.sleep(0.1)

        assert request.status == ChainStatus.TIMEOUT
        listener.assert_awaited_once_with(request)

    @pytest.mark.asyncio
    async def test_auto_approve_on_level_timeout(self, chain):
        chain.create_approval_chain("c", [
            {"id": "l1", "name": "Fast", "approvers": ["alice"], "timeout_ms": 20, "auto_approve_on_timeout": True},
            {"id": "l2", "name": "Final", "approvers": ["bob"]},
        ])
        request = await chain.initiate_approval("e1", "c")

        await asyncio.sleep(0.1)

        assert request.current_level.id == "l2"
        assert request.is_pending
        assert request.history[0].automated is True
        assert request.history[0].approver.id == "system"

    @pytest.mark.asyncio
    async def test_decision_cancels_level_timer(self, chain):
        chain.create_approval_chain("c", [
            {"id": "l1", "name": "Slow", "approvers": ["alice"], "timeout_ms": 50},
        ])
        request = await chain.initiate_approval("e1", "c")

        await chain.process_approval(request.id, "alice", APPROVED)
        await asyncio.sleep(0.1)

        assert request.status == ChainStatus.APPROVED

    @pytest.mark.asyncio
    async def test_listener_notified_on_resolution(self, chain):
        listener = AsyncMock()
        chain.add_listener(listener)
        chain.create_approval_chain("c", [{"id": "l1", "name": "One", "approvers": ["alice"]}])
        request = await chain.initiate_approval("e1", "c")

        await chain.process_approval(request.id, "alice", APPROVED)
        await asyncio.sleep(0)

        listener.assert_awaited_once_with(request)

        chain.remove_listener(listener)

    @pytest.mark.asyncio
    async def test_pending_approvals_for_approver(self, two_level_chain):
        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.5})

        assert two_level_chain.get_pending_approvals_for_approver("alice") == [request]
        assert two_level_chain.get_pending_approvals_for_approver("bob") == []

    @pytest.mark.asyncio
    async def test_discard_request(self, two_level_chain):
        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.5})

        assert two_level_chain.discard_request(request.id) is True
        assert two_level_chain.get_approval_request(request.id) is None
        assert two_level_chain.discard_request(request.id) is False

    @pytest.mark.asyncio
    async def test_shutdown_keeps_chain_definitions(self, two_level_chain):
        request = await two_level_chain.initiate_approval("e1", "deploy", {"confidence": 0.5})

        await two_level_chain.shutdown()

        assert two_level_chain.get_approval_request(request.id) is None
        assert two_level_chain.get_chain("deploy") is not None


class TestLevelDecision:
    """Test policy evaluation of a single level."""

    def test_majority_two_of_three(self):
        level = ApprovalLevel(id="l1", name="Board", approvers=["a", "b", "c"], policy=ApprovalPolicy.MAJORITY)

        decision = ApprovalChain.evaluate_level_decision(level, _votes("l1", ("a", APPROVED), ("b", APPROVED)))

        assert decision == LevelDecision.APPROVED

    def test_majority_pending_and_rejected(self):
        level = ApprovalLevel(id="l1", name="Board", approvers=["a", "b", "c"], policy=ApprovalPolicy.MAJORITY)

        assert ApprovalChain.evaluate_level_decision(
            level, _votes("l1", ("a", APPROVED), ("b", REJECTED))
        ) == LevelDecision.PENDING
        assert ApprovalChain.evaluate_level_decision(
            level, _votes("l1", ("a", REJECTED), ("b", REJECTED))
        ) == LevelDecision.REJECTED

    def test_any_policy(self):
        level = ApprovalLevel(id="l1", name="Pair", approvers=["a", "b"])

        assert ApprovalChain.evaluate_level_decision(level, _votes("l1", ("a", APPROVED))) == LevelDecision.APPROVED
        assert ApprovalChain.evaluate_level_decision(level, _votes("l1", ("a", REJECTED))) == LevelDecision.PENDING
        assert ApprovalChain.evaluate_level_decision(
            level, _votes("l1", ("a", REJECTED), ("b", REJECTED))
        ) == LevelDecision.REJECTED

    def test_all_policy(self):
        level = ApprovalLevel(id="l1", name="Pair", approvers=["a", "b"], policy=ApprovalPolicy.ALL)

        assert ApprovalChain.evaluate_level_decision(level, _votes("l1", ("a", APPROVED))) == LevelDecision.PENDING
        assert ApprovalChain.evaluate_level_decision(level, _votes("l1", ("b", REJECTED))) == LevelDecision.REJECTED

    def test_threshold_policy(self):
        level = ApprovalLevel(
            id="l1", name="Panel", approvers=["a", "b", "c"], policy=ApprovalPolicy.THRESHOLD, threshold=2
        )

        assert ApprovalChain.evaluate_level_decision(level, _votes("l1", ("a", APPROVED))) == LevelDecision.PENDING
        assert ApprovalChain.evaluate_level_decision(
            level, _votes("l1", ("a", APPROVED), ("c", APPROVED))
        ) == LevelDecision.APPROVED
        assert ApprovalChain.evaluate_level_decision(
            level, _votes("l1", ("a", REJECTED), ("b", REJECTED))
        ) == LevelDecision.REJECTED

    @pytest.mark.parametrize(
        "policy, threshold",
        [
            (ApprovalPolicy.ALL, None),
            (ApprovalPolicy.ANY, None),
            (ApprovalPolicy.MAJORITY, None),
            (ApprovalPolicy.THRESHOLD, 1),
        ],
    )
    def test_non_member_votes_are_ignored(self, policy, threshold):
        level = ApprovalLevel(id="l1", name="Pair", approvers=["a", "b"], policy=policy, threshold=threshold)

        approvals = _votes("l1", ("mallory", APPROVED), ("eve", APPROVED))
        rejections = _votes("l1", ("mallory", REJECTED), ("eve", REJECTED))

        assert ApprovalChain.evaluate_level_decision(level, approvals) == LevelDecision.PENDING
        assert ApprovalChain.evaluate_level_decision(level, rejections) == LevelDecision.PENDING


class TestConditions:
    """Test condition evaluation."""

    @pytest.mark.parametrize(
        "condition, context, expected",
        [
            ({"field": "confidence", "operator": "lt", "value": 0.6}, {"confidence": 0.5}, True),
            ({"field": "confidence", "operator": "gte", "value": 0.6}, {"confidence": 0.5}, False),
            ({"field": "risk_level", "operator": "gte", "value": "high"}, {"risk_level": "critical"}, True),
            ({"field": "risk_level", "operator": "gt", "value": "high"}, {"risk_level": "medium"}, False),
            ({"field": "metadata.env", "operator": "eq", "value": "prod"}, {"metadata": {"env": "prod"}}, True),
            ({"field": "env", "operator": "ne", "value": "prod"}, {"env": "dev"}, True),
            ({"field": "env", "operator": "in", "value": ["prod", "staging"]}, {"env": "staging"}, True),
            ({"field": "tags", "operator": "contains", "value": "pii"}, {"tags": ["pii", "eu"]}, True),
            ({"field": "message", "operator": "contains", "value": "drop"}, {"message": "drop table"}, True),
            ({"field": "missing", "operator": "gt", "value": 1}, {}, False),
            ({"field": "confidence", "operator": "gt", "value": 0.5}, {"confidence": "unknown"}, False),
        ],
    )
    def test_evaluate_condition(self, condition, context, expected):
        assert ApprovalChain.evaluate_condition(ApprovalCondition(**condition), context) is expected
