"""Sets global version values"""

__version__ = "0.2.0"

SERVER = "network-journal/{0}".format(__version__)

DEFAULT_USER_AGENT_DATABASE_PATH = "/usr/share/network-journal/regexes.yaml"

DMARC_SEARCH_CRITERIA = [
    "UNANSWERED",
    "UNSEEN",
    "UNDELETED",
    "UNDRAFT",
    "SUBJECT",
    "Report Domain:",
]

DEFAULT_CHECK_TIMEOUT = 300
