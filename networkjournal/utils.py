"""Utility functions that might be useful for other projects"""

from __future__ import annotations

import base64
import logging
import os
from typing import Optional, Tuple
from urllib.parse import urlsplit

from ua_parser import BasicResolver, Parser
from ua_parser.loaders import load_yaml

from networkjournal.log import logger
from networkjournal.types import (
    DeviceComponent,
    Derived,
    UrlComponent,
    UserAgentComponent,
)

mailparser_logger = logging.getLogger("mailparser")
mailparser_logger.setLevel(logging.CRITICAL)

SPECIAL_SCHEMES = ("http", "https", "ws", "wss", "ftp", "file")

# uap-core's family for strings no rule matches
UNMATCHED_FAMILY = "Other"


class InvalidURL(ValueError):
    """Raised when a string cannot be parsed as an absolute URL"""


def decode_base64(data: str) -> bytes:
    """
    Decodes a base64 string, with padding being optional

    Args:
        data (str): A base64 encoded string

    Returns:
        bytes: The decoded bytes

    """
    data = "".join(data.split())
    data_bytes = bytes(data, encoding="ascii")
    missing_padding = len(data_bytes) % 4
    if missing_padding != 0:
        data_bytes += b"=" * (4 - missing_padding)
    return base64.b64decode(data_bytes)


class UserAgentDatabase(object):
    """
    A uap-core ``regexes.yaml`` ruleset, loaded once.

    A missing or unreadable file leaves the database empty, and an empty
    database analyzes every user agent to empty components.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._parser: Optional[Parser] = None
        if path is None:
            return
        if not os.path.isfile(path):
            logger.info(
                "No user agent database at {0}, user agents will not be "
                "analyzed".format(path)
            )
            return
        try:
            self._parser = Parser(BasicResolver(load_yaml(path)))
            logger.debug("Loaded user agent database from {0}".format(path))
        except Exception as e:
            logger.error("Unable to load user agent database {0}: {1}".format(path, e))

    @property
    def loaded(self) -> bool:
        return self._parser is not None

    def analyze(
        self, user_agent: str
    ) -> Tuple[UserAgentComponent, UserAgentComponent, DeviceComponent]:
        if self._parser is None:
            return {"family": ""}, {"family": ""}, {"family": ""}
        try:
            result = self._parser.parse(user_agent)
            client = _version_component(result.user_agent)
            os_ = _version_component(result.os)
            device = _device_component(result.device)
        except Exception as e:
            logger.error(
                "Unable to analyze user agent {0!r}: {1}".format(user_agent, e)
            )
            return {"family": ""}, {"family": ""}, {"family": ""}
        return client, os_, device


def _device_component(parsed) -> DeviceComponent:
    # no matching rule
    if parsed is None:
        return {"family": UNMATCHED_FAMILY}
    device: DeviceComponent = {"family": parsed.family}
    if parsed.brand is not None:
        device["brand"] = parsed.brand
    if parsed.model is not None:
        device["model"] = parsed.model
    return device


def _version_component(parsed) -> UserAgentComponent:
    if parsed is None:
        return {"family": UNMATCHED_FAMILY}
    component: UserAgentComponent = {"family": parsed.family}
    for key in ("major", "minor", "patch", "patch_minor"):
        value = getattr(parsed, key)
        if value is not None:
            component[key] = value
    return component


EMPTY_USER_AGENT_DATABASE = UserAgentDatabase()


def analyze_user_agent(
    user_agent: str, database: Optional[UserAgentDatabase] = None
) -> Tuple[UserAgentComponent, UserAgentComponent, DeviceComponent]:
    """
    Splits a user agent string into client, operating system and device

    Args:
        user_agent (str): A User-Agent header value
        database (UserAgentDatabase): The ruleset to match against

    Returns:
        tuple: ``(client, os, device)`` dictionaries, with empty families
        when the database is not loaded
    """
    if database is None:
        database = EMPTY_USER_AGENT_DATABASE
    return database.analyze(user_agent)


def analyze_url(url: str) -> UrlComponent:
    """
    Splits an absolute URL into host, path and query

    Args:
        url (str): The URL

    Returns:
        dict: ``host``, ``path`` and, when present, ``query``

    Raises:
        InvalidURL: the string is not an absolute URL
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname
        # accessing the port validates it
        parts.port
    except ValueError as e:
        raise InvalidURL("Invalid URL {0!r}: {1}".format(url, e))
    if not parts.scheme:
        raise InvalidURL("Invalid URL {0!r}: relative URL without a base".format(url))
    path = parts.path
    if parts.scheme.lower() in SPECIAL_SCHEMES and path == "":
        path = "/"
    result: UrlComponent = {"host": host, "path": path}
    if parts.query:
        result["query"] = parts.query
    return result


def empty_derived() -> Derived:
    """Returns the derived fields of a report without usable hints"""
    return {
        "client": {"family": ""},
        "os": {"family": ""},
        "device": {"family": ""},
        "url": {"host": None, "path": ""},
    }
