"""
Exception types raised by the auto-responder
"""


class AutoResponderError(Exception):
    """Base class for all auto-responder errors"""


class ConfigurationError(AutoResponderError):
    """Raised at startup when required settings are missing"""


class MailboxNotConnectedError(AutoResponderError):
    """Raised when a mailbox operation is attempted without a live connection"""


class MailboxCommandError(AutoResponderError):
    """Raised when the IMAP server answers a command with anything but OK"""

    def __init__(self, command: str, result: str, detail: str = ""):
        self.command = command
        self.result = result
        message = f"IMAP {command} failed with {result}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class MessageParseError(AutoResponderError):
    """Raised when raw message bytes cannot be turned into an IncomingMessage"""
