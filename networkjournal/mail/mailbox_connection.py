# -*- coding: utf-8 -*-

from __future__ import annotations

from abc import ABC
from typing import List, Sequence


class MailboxConnection(ABC):
    """
    Interface for a mailbox connection
    """

    def fetch_messages(self, reports_folder: str, criteria: Sequence[str]) -> List:
        raise NotImplementedError

    def fetch_raw_messages(self, message_ids: Sequence) -> List[bytes]:
        raise NotImplementedError

    def logout(self):
        raise NotImplementedError
