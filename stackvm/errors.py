"""Error taxonomy for VM lifecycle operations."""

from typing import NamedTuple


class StackVMError(Exception):
    """Base class for all stackvm errors."""


class ConfigurationError(StackVMError):
    """Descriptor or config is missing required fields."""


class NotFoundError(StackVMError):
    """A flavor, image, instance or address does not exist on the provider."""

    def __init__(self, kind, name=""):
        self.kind = kind
        self.name = name
        detail = f" '{name}'" if name else ""
        super().__init__(f"{kind}{detail} not found")


class MissingIdentifierError(StackVMError):
    """Operation attempted before the step that acquires the identifier."""

    def __init__(self, what="instance ID"):
        self.what = what
        super().__init__(f"missing {what}")


class AlreadyProvisionedError(StackVMError):
    """Descriptor already owns an instance."""


class InvalidStateError(StackVMError):
    """The VM is not in the state the operation requires."""


class AuthFailureError(StackVMError):
    """Provider rejected the credentials or session."""


class NotSupportedError(StackVMError):
    """Capability the provider lacks."""


class ActionTimeoutError(StackVMError):
    """Deadline elapsed waiting for a state transition."""

    def __init__(self, description, timeout, last_status=None):
        self.description = description
        self.timeout = timeout
        self.last_status = last_status
        super().__init__(f"timeout after {timeout}s waiting for {description} (last: '{last_status}')")


class ProviderError(StackVMError):
    """Opaque remote failure, tagged with the stage that issued the call."""

    def __init__(self, message, stage=""):
        self.stage = stage
        super().__init__(message)


class VolumeCreateError(ProviderError):
    def __init__(self, message, cleanup_errors=()):
        self.cleanup_errors = list(cleanup_errors)
        super().__init__(message, stage="create_volume")


class VolumeAttachError(ProviderError):
    def __init__(self, message, cleanup_errors=()):
        self.cleanup_errors = list(cleanup_errors)
        super().__init__(message, stage="attach_volume")


class VolumeDetachError(ProviderError):
    def __init__(self, message):
        super().__init__(message, stage="detach_volume")


class VolumeDeleteError(ProviderError):
    def __init__(self, message):
        super().__init__(message, stage="delete_volume")


class StageError(NamedTuple):
    """A failure tagged with the lifecycle stage it came from."""

    stage: str
    error: Exception

    def __str__(self):
        return f"{self.stage}: {self.error}"


class CombinedError(StackVMError):
    """Aggregate of independent failures from a multi-stage operation."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(self._format())

    def _format(self):
        return "; ".join(str(e) for e in self.errors)

    def __str__(self):
        return self._format()

    @property
    def stages(self):
        return [e.stage for e in self.errors]


class ProvisionError(CombinedError):
    """Provision failed after the instance was created.

    ``errors`` holds the failures of the stage that broke (``cause`` is the
    first of them) followed by teardown failures. ``rolled_back`` is True
    when teardown completed without errors.
    """

    def __init__(self, causes, teardown_errors=(), instance_id=""):
        self.causes = list(causes)
        self.cause = self.causes[0]
        self.teardown_errors = list(teardown_errors)
        self.instance_id = instance_id
        self.rolled_back = not self.teardown_errors
        super().__init__([*self.causes, *self.teardown_errors])

    def _format(self):
        text = super()._format()
        if self.rolled_back:
            return f"{text}; teardown: instance {self.instance_id} deleted"
        return f"{text}; teardown incomplete for instance {self.instance_id}"
