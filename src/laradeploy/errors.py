"""Domain errors for LaraDeploy."""


class DeployError(RuntimeError):
    """Base class for failures the orchestrator knows how to report."""

    kind = "DeployError"


class ValidationError(DeployError):
    """Malformed application, domain or configuration."""

    kind = "ValidationError"


class DependencyError(DeployError):
    """A required external tool is missing."""

    kind = "DependencyError"


class BackupError(DeployError):
    """A snapshot could not be created."""

    kind = "BackupError"


class MigrationError(DeployError):
    """Schema or data migration failed."""

    kind = "MigrationError"


class DeploymentError(DeployError):
    """Generic stage failure."""

    kind = "DeploymentError"


class RollbackError(DeployError):
    """Restoring the pre-deploy snapshot failed after a stage failure."""

    kind = "RollbackError"


class SSLError(DeployError):
    """Certificate issuance or renewal failed. Never fatal to a deployment."""

    kind = "SSLError"


class RunCancelled(BaseException):
    """Raised when the run receives an external interrupt signal."""
