"""
Error taxonomy for rule evaluation and stage runs.

TemplateError and NetworkError abort a stage. RuleSyntaxError and ScriptError
only cost one field or item. An empty match is not an error at all.
"""


class RuleDebugError(Exception):
    """Base class for every error raised by the rule debugger."""
    pass


class TemplateError(RuleDebugError):
    """A URL template could not be turned into a request."""
    pass


class NetworkError(RuleDebugError):
    """Connection failure, timeout or non-2xx response."""

    def __init__(self, message, fetch=None):
        super().__init__(message)
        self.fetch = fetch


class RuleSyntaxError(RuleDebugError):
    """Bad selector, invalid JSON path, regex or index expression."""
    pass


class ScriptError(RuleDebugError):
    """An embedded script threw or ran past its time limit."""
    pass
