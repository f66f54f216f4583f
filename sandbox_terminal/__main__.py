import sys

from sandbox_terminal.command_line.terminal_commands import main

if __name__ == "__main__":
    sys.exit(main())
