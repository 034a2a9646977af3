"""
Tests for the approval gate and routing helpers.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from hitlflow.approval.gate import ApprovalGate, route_after_human_approval, route_based_on_confidence
from hitlflow.approval.models import ApprovalOptions, SkipConditions, WorkflowState
from hitlflow.config.models import HITLConfig


def _state(confidence=0.5, **extra):
    return {"execution_id": "e1", "current_node": "deploy", "confidence": confidence, **extra}


class TestApprovalGate:
    """Test cases for deciding whether a node needs approval."""

    @pytest.fixture
    def gate(self):
        return ApprovalGate(config=HITLConfig(confidence_threshold=0.7))

    @pytest.mark.asyncio
    async def test_confident_node_passes(self, gate):
        decision = await gate.decide(_state(0.9))

        assert decision.required is False
        assert decision.skipped is False
        assert decision.reasons == []
        assert decision.confidence == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_low_confidence_requires_approval(self, gate):
        decision = await gate.decide(_state(0.5))

        assert decision.required is True
        assert "below threshold" in decision.reasons[0]

    @pytest.mark.asyncio
    async def test_option_threshold_wins(self, gate):
        decision = await gate.decide(_state(0.5), {"confidence_threshold": 0.4})
        assert decision.required is False

    @pytest.mark.asyncio
    async def test_custom_condition(self, gate):
        decision = await gate.decide(_state(0.9), ApprovalOptions(when=lambda state: True))

        assert decision.required is True
        assert decision.reasons == ["Custom approval condition matched"]

    @pytest.mark.asyncio
    async def test_risk_threshold(self, gate):
        """Test that a risk level at or above the threshold requires approval."""
        state = _state(0.9, metadata={"privileged_operation": True, "customer_data": True})
        options = {"risk_assessment": {"enabled": True}, "risk_threshold": "medium"}

        decision = await gate.decide(state, options)

        assert decision.required is True
        assert decision.risk_assessment is not None
        assert "Risk level" in decision.reasons[0]

    @pytest.mark.asyncio
    async def test_risk_below_threshold(self, gate):
        options = {"risk_assessment": {"enabled": True}, "risk_threshold": "high"}

        decision = await gate.decide(_state(0.9), options)

        assert decision.required is False
        assert decision.risk_assessment.level.value == "low"

    @pytest.mark.asyncio
    async def test_already_approved(self, gate):
        assert (await gate.decide(_state(0.1, approved_deploy=True))).reasons == ["Approval already received"]
        assert (await gate.decide(_state(0.1, approval_received=True))).required is False

    @pytest.mark.asyncio
    async def test_other_node_approval_does_not_count(self, gate):
        decision = await gate.decide(_state(0.1, approved_build=True))
        assert decision.required is True


class TestSkipConditions:
    """Test cases for skip conditions."""

    @pytest.fixture
    def gate(self):
        return ApprovalGate()

    @pytest.mark.asyncio
    async def test_no_skip_conditions(self, gate):
        assert await gate.evaluate_skip_conditions(WorkflowState(execution_id="e1"), ApprovalOptions()) is False

    @pytest.mark.asyncio
    async def test_high_confidence(self, gate):
        options = ApprovalOptions(skip_conditions=SkipConditions(high_confidence=0.4))

        decision = await gate.decide(_state(0.5), options)

        assert decision.required is False
        assert decision.skipped is True
        assert decision.reasons == ["Skip conditions met"]

    @pytest.mark.asyncio
    async def test_non_finite_confidence_never_skips(self, gate):
        options = ApprovalOptions(skip_conditions=SkipConditions(high_confidence=0.1))

        decision = await gate.decide(_state(float("nan")), options)

        assert decision.skipped is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "skip, metadata, expected",
        [
            ({"user_role": ["admin"]}, {"user_role": "admin"}, True),
            ({"user_role": ["admin"]}, {"user_role": "viewer"}, False),
            ({"safe_mode": True}, {"safe_mode": True}, True),
            ({"safe_mode": True}, {"safe_mode": "yes"}, False),
            ({"safe_mode": False}, {"safe_mode": True}, False),
        ],
    )
    async def test_metadata_conditions(self, gate, skip, metadata, expected):
        state = WorkflowState(execution_id="e1", metadata=metadata)
        options = ApprovalOptions(skip_conditions=skip)

        assert await gate.evaluate_skip_conditions(state, options) is expected

    @pytest.mark.asyncio
    async def test_custom_skip(self, gate):
        state = WorkflowState(execution_id="e1")

        sync_custom = MagicMock(return_value=True)
        assert await gate.evaluate_skip_conditions(
            state, ApprovalOptions(skip_conditions=SkipConditions(custom=sync_custom))
        ) is True
        sync_custom.assert_called_once_with(state)

        async_custom = AsyncMock(return_value=False)
        assert await gate.evaluate_skip_conditions(
            state, ApprovalOptions(skip_conditions=SkipConditions(custom=async_custom))
        ) is False


class TestRouting:
    """Test cases for routing helpers."""

    @pytest.mark.parametrize(
        "status, route",
        [
            ("approved", "approved"),
            ("rejected", "rejected"),
            ("needs_revision", "revision"),
            ("unexpected", "retry"),
        ],
    )
    def test_route_after_human_approval(self, status, route):
        assert route_after_human_approval({"human_feedback": {"status": status}}) == route

    def test_route_without_feedback(self):
        assert route_after_human_approval({}) == "retry"
        assert route_after_human_approval(WorkflowState(execution_id="e1")) == "retry"

    def test_route_from_workflow_state(self):
        state = WorkflowState(execution_id="e1", human_feedback={"status": "approved"})
        assert route_after_human_approval(state) == "approved"

    @pytest.mark.parametrize(
        "confidence, requires_human_approval, route",
        [
            (0.97, True, "deploy"),
            (0.85, False, "deploy"),
            (0.85, True, "human_approval"),
            (0.5, False, "human_approval"),
            (None, False, "human_approval"),
            (float("nan"), False, "human_approval"),
        ],
    )
    def test_route_based_on_confidence(self, confidence, requires_human_approval, route):
        state = {"confidence": confidence}

        assert route_based_on_confidence(
            state, "deploy", requires_human_approval=requires_human_approval
        ) == route

    def test_custom_low_confidence_route(self):
        assert route_based_on_confidence(
            {"confidence": 0.1}, "deploy", low_confidence_route="abort"
        ) == "abort"
