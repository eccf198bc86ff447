from collections.abc import Iterable


class EtlControlError(Exception):
    pass


class ConfigurationError(EtlControlError):
    """Metadata is missing or invalid. Raised before any pipeline executes."""


class CycleDetectedError(EtlControlError):
    def __init__(self, involved_names: Iterable[str]) -> None:
        self.involved_names = tuple(involved_names)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.involved_names)}")


class UnitInvocationError(EtlControlError):
    def __init__(self, unit_name: str, message: str, error_code: str = "UNIT_FAILED") -> None:
        self.unit_name = unit_name
        self.error_code = error_code
        super().__init__(f"unit '{unit_name}' failed: {message}")


class MergeConflictError(EtlControlError):
    error_code = "MERGE_CONFLICT"

    def __init__(self, table_name: str, message: str) -> None:
        self.table_name = table_name
        super().__init__(f"merge conflict on '{table_name}': {message}")


class ScoringRuleError(EtlControlError):
    def __init__(self, entity_type: str, field_name: str, message: str) -> None:
        self.entity_type = entity_type
        self.field_name = field_name
        super().__init__(f"rule {entity_type}.{field_name} could not be evaluated: {message}")


class DataQualityError(EtlControlError):
    error_code = "DQ_THRESHOLD"

    def __init__(self, entity_type: str, threshold_key: str, score: float, threshold: float) -> None:
        self.entity_type = entity_type
        self.threshold_key = threshold_key
        self.score = score
        self.threshold = threshold
        super().__init__(f"{entity_type} batch scored {score}% against {threshold_key}={threshold}")
