# =============================================================================
# tutor_core/state/__init__.py
# Session State for the offline tutor core
# =============================================================================

from .app_state import (
    AppStateContainer,
    Selection,
    SETTINGS_DEFAULTS,
    STATE_DEFAULTS,
    PERSISTENT_FIELDS,
    serialize_field,
    deserialize_field,
    validate_setting,
)

__all__ = [
    "AppStateContainer",
    "Selection",
    "SETTINGS_DEFAULTS",
    "STATE_DEFAULTS",
    "PERSISTENT_FIELDS",
    "serialize_field",
    "deserialize_field",
    "validate_setting",
]
