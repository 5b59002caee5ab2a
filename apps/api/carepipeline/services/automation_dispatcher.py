"""Trigger dispatcher - runs enabled rules for an event against one subject.

Each matching rule is claimed with an AutomationExecution row before its
action runs. With an event_id the row carries a unique dedupe key, so a
redelivered event never fires the same rule twice for the same subject.
One failing rule never blocks the others.
"""

from __future__ import annotations

import logging

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from carepipeline.core.structured_logging import build_log_context
from carepipeline.db.enums import ExecutionStatus, TriggerType
from carepipeline.db.models import AutomationExecution, AutomationRule, Subject
from carepipeline.services.action_executor import (
    ActionExecutor,
    ActionResult,
    ActionSpec,
    executor as default_executor,
)
from carepipeline.services.condition_evaluator import (
    ConditionEvaluator,
    evaluator as default_evaluator,
)

logger = logging.getLogger(__name__)


class AutomationDispatcher:
    def __init__(
        self,
        evaluator: ConditionEvaluator | None = None,
        executor: ActionExecutor | None = None,
    ) -> None:
        self.evaluator = evaluator or default_evaluator
        self.executor = executor or default_executor

    def dispatch(
        self,
        db: Session,
        trigger_type: TriggerType | str,
        subject: Subject,
        context: dict | None = None,
        event_id: str | None = None,
    ) -> list[ActionResult]:
        """
        Fire every enabled rule for trigger_type whose conditions match.

        Returns one result per matching rule (duplicates come back skipped).
        """
        trigger = trigger_type.value if isinstance(trigger_type, TriggerType) else trigger_type
        context = context or {}
        results: list[ActionResult] = []

        for rule in self._find_rules(db, trigger, subject.entity_type):
            log_context = build_log_context(
                subject_id=str(subject.id), rule_id=str(rule.id), trigger_type=trigger
            )
            try:
                if not self.evaluator.matches(rule, subject, context):
                    continue
                result = self._fire(db, rule, subject, trigger, context, event_id)
            except Exception as e:
                logger.exception(f"Automation rule {rule.id} failed", extra=log_context)
                db.rollback()
                result = ActionResult(
                    action_type=rule.action_type,
                    success=False,
                    error=f"{e.__class__.__name__}: {e}",
                    rule_id=str(rule.id),
                    subject_id=str(subject.id),
                )
            results.append(result)

        return results

    def _find_rules(
        self, db: Session, trigger_type: str, entity_type: str
    ) -> list[AutomationRule]:
        return (
            db.query(AutomationRule)
            .filter(
                AutomationRule.trigger_type == trigger_type,
                AutomationRule.enabled.is_(True),
                or_(
                    AutomationRule.entity_type.is_(None),
                    AutomationRule.entity_type == entity_type,
                ),
            )
            .order_by(AutomationRule.created_at, AutomationRule.name)
            .all()
        )

    def _fire(
        self,
        db: Session,
        rule: AutomationRule,
        subject: Subject,
        trigger_type: str,
        context: dict,
        event_id: str | None,
    ) -> ActionResult:
        rule_id = rule.id
        subject_id = subject.id

        execution = self._claim(db, rule, subject, trigger_type, context, event_id)
        if execution is None:
            logger.info(
                f"Rule already fired for event {event_id}, skipping",
                extra=build_log_context(
                    subject_id=str(subject_id), rule_id=str(rule_id), trigger_type=trigger_type
                ),
            )
            return ActionResult(
                action_type=rule.action_type,
                success=True,
                skipped=True,
                description="Duplicate event",
                rule_id=str(rule_id),
                subject_id=str(subject_id),
            )

        try:
            result = self.executor.execute(db, ActionSpec.from_rule(rule), subject, context)
        except Exception as e:
            db.rollback()
            self._finish(db, execution, ExecutionStatus.FAILED, f"{e.__class__.__name__}: {e}")
            raise

        if result.success:
            status = ExecutionStatus.SUCCESS
        elif result.skipped:
            status = ExecutionStatus.SKIPPED
        else:
            status = ExecutionStatus.FAILED
        self._finish(db, execution, status, result.error)
        return result

    def _claim(
        self,
        db: Session,
        rule: AutomationRule,
        subject: Subject,
        trigger_type: str,
        context: dict,
        event_id: str | None,
    ) -> AutomationExecution | None:
        """Insert the execution row first; None means this event already claimed the rule."""
        dedupe_key = f"{rule.id}:{subject.id}:{event_id}" if event_id else None
        execution = AutomationExecution(
            rule_id=rule.id,
            subject_id=subject.id,
            trigger_type=trigger_type,
            event_id=event_id,
            dedupe_key=dedupe_key,
            trigger_context=_safe_context(context),
            status=ExecutionStatus.PENDING.value,
        )
        db.add(execution)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return None
        return execution

    def _finish(
        self,
        db: Session,
        execution: AutomationExecution,
        status: ExecutionStatus,
        error: str | None,
    ) -> None:
        execution.status = status.value
        execution.error_message = error
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                f"Failed to record execution {execution.id} as {status.value}",
                extra=build_log_context(rule_id=str(execution.rule_id)),
            )


def _safe_context(context: dict) -> dict:
    """Trigger context as stored on the execution row, without message bodies or phone numbers."""
    return {k: v for k, v in context.items() if k not in {"message_text", "sender_number"}}


dispatcher = AutomationDispatcher()
