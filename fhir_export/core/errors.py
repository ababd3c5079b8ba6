class ExportError(Exception):
    """Base class for every error raised by the export pipeline."""


# Configuration: fatal at startup


class ConfigurationError(ExportError):
    pass


class CriteriaConfigError(ConfigurationError):
    pass


# Persistence: fatal for the run, the process stops


class RecoveryError(ExportError):
    pass


# Row level: logged, the row is excluded or ignored


class RowDecodingError(ExportError):
    pass


class UnknownChangeTypeError(RowDecodingError):
    def __init__(self, change_type: str | None, expected: tuple[str, ...] = ("I", "U", "D")):
        self.change_type = change_type
        self.expected = expected
        super().__init__(f"Unknown change type [actual={change_type}, expected=<{', '.join(expected)}>]")


class MissingEntityIdError(RowDecodingError):
    pass


class ResourceResolutionError(ExportError):
    def __init__(self, resource_type: str, resource_id: str, reason: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"Failed to retrieve {resource_type} resource [id={resource_id}]: {reason}")


class CriteriaEvaluationError(ExportError):
    pass


class AmbiguousResourceTypeError(CriteriaEvaluationError):
    pass


class VariableResolutionError(CriteriaEvaluationError):
    pass


class UnsupportedValueError(CriteriaEvaluationError):
    pass


class ExpressionEvaluationError(CriteriaEvaluationError):
    def __init__(self, expression: str, message: str, resource_type: str | None = None, resource_id: str | None = None):
        self.expression = expression
        self.resource_type = resource_type
        self.resource_id = resource_id
        context = f" against resource [type={resource_type}, id={resource_id}]" if resource_type else ""
        super().__init__(f"Could not evaluate expression '{expression}'{context}: {message}")


# Storage: the run fails and its window is retried


class StorageError(ExportError):
    pass


class ObjectStoringError(StorageError):
    def __init__(self, object_name: str, bucket: str, reason: str = ""):
        self.object_name = object_name
        self.bucket = bucket
        suffix = f": {reason}" if reason else ""
        super().__init__(f"Failed to put object '{object_name}' into bucket '{bucket}'{suffix}")


class BucketCreationError(StorageError):
    def __init__(self, bucket: str, reason: str = ""):
        self.bucket = bucket
        suffix = f": {reason}" if reason else ""
        super().__init__(f"Failed to create bucket '{bucket}'{suffix}")


# Transport: handled inside the FHIR client


class OAuthError(ExportError):
    pass
