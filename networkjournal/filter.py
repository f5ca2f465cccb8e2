from __future__ import annotations

from typing import Iterable, Optional

from networkjournal.log import logger
from networkjournal.utils import InvalidURL, analyze_url


class DomainFilter(object):
    """Admits reports whose relevant domain is whitelisted"""

    def __init__(self, domain_whitelist: Optional[Iterable[str]] = None):
        """
        Initializes the DomainFilter

        Args:
            domain_whitelist (list): Hosts to accept reports for. Matching
                is exact and case-sensitive. An empty whitelist accepts
                every host.
        """
        self.domain_whitelist = frozenset(domain_whitelist or [])

    def is_domain_allowed(self, host: str) -> bool:
        if not self.domain_whitelist or host in self.domain_whitelist:
            return True
        logger.debug(
            'Got report for domain "{0}", which is not whitelisted. '
            "Dropping it.".format(host)
        )
        return False

    def is_domain_of_url_allowed(self, url: str) -> bool:
        """Invalid URLs and URLs without a host are never allowed"""
        try:
            host = analyze_url(url)["host"]
        except InvalidURL:
            return False
        if not host:
            return False
        return self.is_domain_allowed(host)
