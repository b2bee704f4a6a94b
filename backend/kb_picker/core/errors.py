"""Error taxonomy for folder browsing, selection and indexing."""
from typing import Iterable, Optional


class PickerError(Exception):
    """Base class for all picker failures. None of them is fatal to the process."""


class FetchFailed(PickerError):
    """A folder listing could not be fetched."""

    def __init__(self, folder_id: Optional[str], reason: str = ""):
        self.folder_id = folder_id
        self.reason = reason
        label = folder_id if folder_id is not None else "<root>"
        super().__init__(f"Failed to list children of {label}: {reason}")


class MembershipUpdateFailed(PickerError):
    """A batched add/remove membership call failed for a whole batch."""

    def __init__(self, job_id: str, resource_ids: Iterable[str], reason: str = ""):
        self.job_id = job_id
        self.resource_ids = list(resource_ids)
        self.reason = reason
        super().__init__(
            f"Failed to update membership of job {job_id} "
            f"for {len(self.resource_ids)} resource(s): {reason}"
        )


class StatusPollFailed(PickerError):
    """A status poll tick failed. Transient; retried by the polling loop."""

    def __init__(self, job_id: str, reason: str = ""):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Failed to poll status of job {job_id}: {reason}")


class SelectionTooLarge(PickerError):
    """Folder expansion visited more nodes than the configured bound."""

    def __init__(self, folder_id: str, limit: int):
        self.folder_id = folder_id
        self.limit = limit
        super().__init__(
            f"Folder {folder_id} contains more than {limit} resources; "
            "select a smaller folder"
        )


class KnowledgeBaseCreateFailed(PickerError):
    """Creating or first-syncing a knowledge base failed."""

    def __init__(self, connection_id: str, reason: str = ""):
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"Failed to create a knowledge base over {connection_id}: {reason}")
