from .transport import JsonLinesSink, StdioTransport, open_stdin_reader

__all__ = ["JsonLinesSink", "StdioTransport", "open_stdin_reader"]
