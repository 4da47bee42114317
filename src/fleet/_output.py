import sys

from fleet.remote_core import NullBackend, Output


class TerminalBackend(object):

    def __init__(self):
        import py.io
        self._tw = py.io.TerminalWriter(sys.stdout)

    def line(self, message, **format):
        self._tw.line(message, **format)

    def sep(self, sep, title, **format):
        self._tw.sep(sep, title, **format)

    def write(self, content, **format):
        self._tw.write(content, **format)


class TestBackend(object):
    """Collect everything that would be shown to the user."""

    __test__ = False

    def __init__(self):
        self.output = ""

    def line(self, message, **format):
        self.output += message + "\n"

    def sep(self, sep, title, **format):
        self.output += " {} {} {} \n".format(sep * 3, title, sep * 3)

    def write(self, content, **format):
        self.output += content


output = Output(NullBackend())

__all__ = ["NullBackend", "Output", "TerminalBackend", "TestBackend", "output"]
