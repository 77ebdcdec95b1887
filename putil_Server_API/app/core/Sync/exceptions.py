# Sync/exceptions.py
#
# Conflicts (stale revisions) are not exceptions: they are returned as rejected entries.


class SyncError(Exception):
    """Base exception for the sync library."""
    pass


class UnknownEntityError(SyncError):
    """The requested entity type has no syncable table."""
    pass


class RecordNotFound(SyncError):
    """A mutation targets an id the owner does not hold."""
    def __init__(self, message, entity=None, record_id=None, *args):
        super().__init__(message, *args)
        self.entity = entity
        self.record_id = record_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity: details.append(f"Entity: {self.entity}")
        if self.record_id is not None: details.append(f"ID: {self.record_id}")
        return f"{base} ({', '.join(details)})" if details else base


class TransactionFailure(SyncError):
    """
    Storage-layer fault. The enclosing transaction was rolled back, nothing was applied,
    and the caller may retry with the same client keys.
    """
    retryable = True


class PublishFailure(SyncError):
    """A notification could not be handed to the channel. Never rolls back the trigger's advance."""
    def __init__(self, message, kind=None, record_id=None, *args):
        super().__init__(message, *args)
        self.kind = kind
        self.record_id = record_id


class IdentityMismatch(SyncError):
    """The mutation's id and clientKey resolve to different records (or the id is bound to another key)."""
    def __init__(self, message, server_row=None, *args):
        super().__init__(message, *args)
        self.server_row = server_row
