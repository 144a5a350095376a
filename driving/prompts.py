from voice.language import Language

PROMPTS = {
    Language.PRIMARY: {
        "welcome": "Modo conducción activado",
        "ready": "Listo para evaluar",
        "cancelled": "Cancelado",
        "exiting": "Saliendo",
    },
    Language.SECONDARY: {
        "welcome": "Driving mode on",
        "ready": "Ready to evaluate",
        "cancelled": "Cancelled",
        "exiting": "Exiting",
    },
}

STATUS_LABELS = {
    Language.PRIMARY: {"WAITING": "Activo", "SLEEP": "Reposo", "READY": "Listo"},
    Language.SECONDARY: {"WAITING": "Active", "SLEEP": "Sleeping", "READY": "Ready"},
}

def prompt(language: Language, key: str) -> str:
    return PROMPTS[language][key]

def status_label(language: Language, state_name: str) -> str:
    return STATUS_LABELS[language].get(state_name, state_name)
