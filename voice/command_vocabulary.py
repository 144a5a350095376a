# voice/command_vocabulary.py

import unicodedata
from enum import Enum
from typing import Dict, List, Optional, Tuple

from voice.language import Language

class Command(Enum):
    EVALUATE = "evaluate"
    CAPTURE = "capture"
    CONFIRM = "confirm"
    DENY = "deny"
    REPEAT = "repeat"
    CANCEL = "cancel"
    SEND = "send"
    EXIT = "exit"

PUNCTUATION = "¿?¡!.,;:"
_PUNCT_TABLE = str.maketrans("", "", PUNCTUATION)

# Order matters only between keys of equal length (see detect_command).
DEFAULT_MAPPING: Tuple[Tuple[str, Command], ...] = (
    # es-ES
    ("evaluar", Command.EVALUATE),
    ("evalua", Command.EVALUATE),
    ("foto", Command.CAPTURE),
    ("capturar", Command.CAPTURE),
    ("camara", Command.CAPTURE),
    ("si", Command.CONFIRM),
    ("vale", Command.CONFIRM),
    ("correcto", Command.CONFIRM),
    ("confirmar", Command.CONFIRM),
    ("no", Command.DENY),
    ("repetir", Command.REPEAT),
    ("cancelar", Command.CANCEL),
    ("enviar", Command.SEND),
    ("salir", Command.EXIT),
    # en-US
    ("evaluate", Command.EVALUATE),
    ("photo", Command.CAPTURE),
    ("capture", Command.CAPTURE),
    ("camera", Command.CAPTURE),
    ("yes", Command.CONFIRM),
    ("correct", Command.CONFIRM),
    ("confirm", Command.CONFIRM),
    ("repeat", Command.REPEAT),
    ("cancel", Command.CANCEL),
    ("send", Command.SEND),
    ("exit", Command.EXIT),
)

CONTEXT_PHRASES: Dict[Language, List[str]] = {
    Language.PRIMARY: ["evaluar", "foto", "capturar", "si", "no", "confirmar", "cancelar", "enviar", "salir"],
    Language.SECONDARY: ["evaluate", "photo", "capture", "yes", "no", "confirm", "cancel", "send", "exit"],
}

def normalize(text: str) -> str:
    """Lowercase, drop diacritics and the ``¿?¡!.,;:`` marks, trim."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.translate(_PUNCT_TABLE).strip()

class CommandVocabulary:
    """
    Immutable utterance-fragment -> Command table.

    Matching is by containment on the normalized utterance: recognizer output
    is sentence-like ("vale quiero evaluar"). When several keys are contained
    the longest one wins, ties go to the key listed first.
    """

    def __init__(self, mapping: Tuple[Tuple[str, Command], ...] = DEFAULT_MAPPING):
        entries = []
        for key, command in mapping:
            if not isinstance(command, Command):
                raise ValueError(f"{command!r} is not a Command")
            entries.append((normalize(key), command))
        # stable sort keeps table order among equal lengths
        self._entries: Tuple[Tuple[str, Command], ...] = tuple(
            sorted(entries, key=lambda e: -len(e[0]))
        )

    @property
    def keys(self) -> List[str]:
        return [k for k, _ in self._entries]

    def normalize(self, text: str) -> str:
        return normalize(text)

    def detect_command(self, text: str) -> Optional[Command]:
        normalized = normalize(text)
        if not normalized:
            return None
        for key, command in self._entries:
            if key in normalized:
                return command
        return None

    def context_phrases(self, language: Language) -> List[str]:
        return list(CONTEXT_PHRASES[language])

DEFAULT_VOCABULARY = CommandVocabulary()

def detect_command(text: str) -> Optional[Command]:
    return DEFAULT_VOCABULARY.detect_command(text)
