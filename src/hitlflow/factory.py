"""
Factory for a fully wired approval system.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .approval.chain import ApprovalChain
from .approval.confidence import ConfidenceEvaluator
from .approval.feedback import FeedbackProcessor
from .approval.gate import ApprovalGate
from .approval.service import HumanApproval
from .communication.event_bus import EventBus
from .communication.events import EventPublisher
from .config.loader import load_hitl_config
from .config.models import HITLConfig
from .logging_config import setup_logging

logger = logging.getLogger(__name__)


class ApprovalSystem:
    """The components of one approval system, sharing config and publisher.

    Example:
        ```python
        async with create_approval_system(config_path="hitl.yaml") as system:
            request = await system.approval.request_approval(
                "exec-1", "deploy", "Deploy to production?", {"confidence": 0.6}
            )
        ```
    """

    def __init__(
        self,
        config: HITLConfig,
        event_publisher: EventPublisher,
        confidence_evaluator: ConfidenceEvaluator,
        approval_chain: ApprovalChain,
        feedback_processor: FeedbackProcessor,
        approval: HumanApproval,
        gate: ApprovalGate,
        owns_event_publisher: bool = False,
    ):
        self.config = config
        self.event_publisher = event_publisher
        self.confidence_evaluator = confidence_evaluator
        self.approval_chain = approval_chain
        self.feedback_processor = feedback_processor
        self.approval = approval
        self.gate = gate
        self.owns_event_publisher = owns_event_publisher

    async def __aenter__(self) -> "ApprovalSystem":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    async def shutdown(self) -> None:
        """Cancel every timer and clear in-memory state."""
        await self.approval.shutdown()
        self.feedback_processor.clear()
        if self.owns_event_publisher and isinstance(self.event_publisher, EventBus):
            await self.event_publisher.shutdown()


def create_approval_system(
    config: Optional[Union[HITLConfig, Dict[str, Any]]] = None,
    event_publisher: Optional[EventPublisher] = None,
    config_path: Optional[Union[str, Path]] = None,
    configure_logging: bool = False,
) -> ApprovalSystem:
    """Create every approval component and wire them together.

    Args:
        config: System configuration (HITLConfig or dict)
        event_publisher: Event sink; an in-process EventBus when omitted
        config_path: YAML configuration file, used when config is omitted
        configure_logging: Apply the configuration's logging settings

    Returns:
        ApprovalSystem with historical patterns and chains from the
        configuration loaded

    Raises:
        ConfigurationError: If the configuration file cannot be loaded
    """
    if config is None:
        config = load_hitl_config(config_path) if config_path else HITLConfig()
    elif not isinstance(config, HITLConfig):
        config = HITLConfig(**config)

    if configure_logging:
        setup_logging(
            level=config.logging.level,
            log_file=config.logging.log_file,
            structured=config.logging.structured,
            rich_console=config.logging.rich_console,
        )

    owns_event_publisher = event_publisher is None
    if owns_event_publisher:
        event_publisher = EventBus()

    confidence_evaluator = ConfidenceEvaluator(event_publisher, config)
    approval_chain = ApprovalChain(event_publisher)
    feedback_processor = FeedbackProcessor(event_publisher)
    approval = HumanApproval(
        confidence_evaluator=confidence_evaluator,
        approval_chain=approval_chain,
        feedback_processor=feedback_processor,
        event_publisher=event_publisher,
        config=config,
    )
    gate = ApprovalGate(confidence_evaluator, config)

    loaded = confidence_evaluator.load_historical_patterns(config.historical_patterns)
    for chain_id, levels in config.chains.items():
        approval_chain.create_approval_chain(chain_id, levels)

    logger.info(
        f"Approval system created with {len(config.chains)} chains "
        f"and {loaded} historical patterns"
    )

    return ApprovalSystem(
        config=config,
        event_publisher=event_publisher,
        confidence_evaluator=confidence_evaluator,
        approval_chain=approval_chain,
        feedback_processor=feedback_processor,
        approval=approval,
        gate=gate,
        owns_event_publisher=owns_event_publisher,
    )
