class UtteranceTimeout(Exception):
    """No complete utterance was captured within the allowed time."""
