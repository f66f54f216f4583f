from sandbox_terminal.terminal import SessionRegistry, TerminalConfig

__version__ = "0.1.0"

__all__ = ["SessionRegistry", "TerminalConfig", "__version__"]
