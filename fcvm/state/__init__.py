from .manager import EXIT_EXPECTED_STATES, TERMINAL_STATES, StateManager, can_transition

__all__ = ["StateManager", "can_transition", "TERMINAL_STATES", "EXIT_EXPECTED_STATES"]
