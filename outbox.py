import structlog

logger = structlog.get_logger(__name__)


class Outbox:
    """Audit events and notifications held back until the transaction commits.

    Nothing is emitted for a unit of work that rolled back, and a failing
    collaborator never reaches the caller.
    """

    def __init__(self, audit, notifier):
        self.audit = audit
        self.notifier = notifier
        self._pending = []

    def record(self, entity, entity_id, action, actor, snapshot=None):
        if self.audit is not None:
            self._pending.append((self.audit.record, (entity, entity_id, action, actor, snapshot), {}))

    def notify(self, event, recipient_id, expense_id, **details):
        if self.notifier is not None:
            self._pending.append((self.notifier.notify, (event, recipient_id, expense_id), details))

    def flush(self):
        pending, self._pending = self._pending, []
        for fn, args, kwargs in pending:
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception("side_effect_failed", target=getattr(fn, "__qualname__", repr(fn)))
