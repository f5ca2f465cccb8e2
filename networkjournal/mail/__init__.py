from networkjournal.mail.mailbox_connection import MailboxConnection
from networkjournal.mail.imap import IMAPConnection

__all__ = [
    "MailboxConnection",
    "IMAPConnection",
]
