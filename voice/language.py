import os
from enum import Enum

class Language(Enum):
    PRIMARY = "es-ES"
    SECONDARY = "en-US"

    @property
    def locale(self) -> str:
        return self.value

def detect_language(locale: str) -> Language:
    """Map a device locale such as ``en_GB.UTF-8`` or ``es-MX`` onto a Language.

    Anything that is not English falls back to the primary language.
    """
    if locale and locale.lower().startswith("en"):
        return Language.SECONDARY
    return Language.PRIMARY

def from_env() -> Language:
    for var in ("LC_ALL", "LC_MESSAGES", "LANG"):
        value = os.environ.get(var)
        if value:
            return detect_language(value)
    return Language.PRIMARY

def resolve(setting: str) -> Language:
    """Resolve a configured language (a locale string or ``"auto"``)."""
    if not setting or setting == "auto":
        return from_env()
    for lang in Language:
        if lang.value == setting or lang.name == setting.upper():
            return lang
    return detect_language(setting)
