# -*- coding: utf-8 -*-

from __future__ import annotations

from typing import List, Sequence

from mailsuite.imap import IMAPClient

from networkjournal.log import logger
from networkjournal.mail.mailbox_connection import MailboxConnection


class IMAPConnection(MailboxConnection):
    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        port: int = 993,
        ssl: bool = True,
        verify: bool = True,
        timeout: int = 30,
        max_retries: int = 4,
    ):
        self._username = user
        self._client = IMAPClient(
            host,
            user,
            password,
            port=port,
            ssl=ssl,
            verify=verify,
            timeout=timeout,
            max_retries=max_retries,
        )

    def fetch_messages(self, reports_folder: str, criteria: Sequence[str]) -> List:
        self._client.select_folder(reports_folder)
        return self._client.search(list(criteria))

    def fetch_raw_messages(self, message_ids: Sequence) -> List[bytes]:
        if len(message_ids) == 0:
            return []
        response = self._client.fetch(list(message_ids), ["RFC822"])
        messages = []
        for message_id in message_ids:
            data = response.get(message_id)
            if data is None or b"RFC822" not in data:
                logger.debug("No message body returned for UID {0}".format(message_id))
                continue
            messages.append(data[b"RFC822"])
        return messages

    def logout(self):
        logger.debug("Logging out {0}".format(self._username))
        self._client.logout()
