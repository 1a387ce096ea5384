"""
Email Auto-Responder

Watches a single mailbox and answers mail from one known sender:
- Keeps an IMAP connection open (IDLE) and reconnects when it drops
- Searches for unseen messages on connect, on new-mail pushes and on a timer
- Generates the reply text with Claude, falling back to a canned answer
- Sends the reply over SMTP
"""

__version__ = "1.0.0"
