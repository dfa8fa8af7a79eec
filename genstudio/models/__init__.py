from .generation import Generation, GenerationStatus, GenerationType, TERMINAL_STATUSES

__all__ = [
    "Generation",
    "GenerationStatus",
    "GenerationType",
    "TERMINAL_STATUSES",
]
