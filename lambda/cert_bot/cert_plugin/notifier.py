import logging

from .models import Outcome

logger = logging.getLogger(__name__)

# SNS rejects longer subjects
MAX_SUBJECT_LENGTH = 100


class Notifier:
    def __init__(self, sns, topic_arn: str, stack_name: str):
        self._sns = sns
        self._topic_arn = topic_arn
        self._stack_name = stack_name

    def subject(self, outcome: Outcome) -> str:
        subject = f"[{self._stack_name}] Certificate {outcome.kind.value}: {outcome.domain_set.primary}"
        if len(subject) > MAX_SUBJECT_LENGTH:
            subject = subject[: MAX_SUBJECT_LENGTH - 3] + "..."
        return subject

    def message(self, outcome: Outcome) -> str:
        record = outcome.record
        lines = [
            f"Domains: {', '.join(outcome.domain_set.domains)}",
            f"Outcome: {outcome.kind.value}",
        ]
        if outcome.reason:
            lines.append(f"Reason: {outcome.reason}")
        if record is not None:
            lines.append(f"Certificate name: {record.store_name}")
            lines.append(f"Certificate id: {record.certificate_id}")
            lines.append(f"Expires at: {record.expires_at.isoformat()}")
        if outcome.distributions:
            lines.append(f"Distributions: {', '.join(outcome.distributions)}")
        for warning in outcome.warnings:
            lines.append(f"Warning: {warning}")
        return "\n".join(lines)

    def notify(self, outcome: Outcome) -> None:
        self._sns.publish(
            TopicArn=self._topic_arn,
            Subject=self.subject(outcome),
            Message=self.message(outcome),
        )
        logger.info("Sent %s notification for %s", outcome.kind.value, outcome.domain_set)
