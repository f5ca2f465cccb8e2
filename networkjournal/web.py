"""Flask transport for the report endpoints"""

from __future__ import annotations

import zlib
from http import HTTPStatus
from typing import Optional, Sequence

from flask import Flask, Response, request

from networkjournal import (
    CSP_REPORT,
    REPORTS_JSON,
    TLSRPT_GZIP,
    TLSRPT_JSON,
    handle_http_report,
    normalize_content_type,
)
from networkjournal.constants import SERVER
from networkjournal.filter import DomainFilter
from networkjournal.log import logger
from networkjournal.types import Sink
from networkjournal.utils import UserAgentDatabase

MAX_CONTENT_LENGTH = 1 * 1024 * 1024

ENDPOINTS = {
    "/reporting-api": (REPORTS_JSON,),
    "/crash": (REPORTS_JSON,),
    "/deprecation": (REPORTS_JSON,),
    "/integrity": (REPORTS_JSON,),
    "/intervention": (REPORTS_JSON,),
    "/nel": (REPORTS_JSON,),
    "/permissions": (REPORTS_JSON,),
    "/coop": (REPORTS_JSON,),
    "/coep": (REPORTS_JSON,),
    "/csp": (REPORTS_JSON, CSP_REPORT),
    "/tlsrpt": (TLSRPT_JSON, TLSRPT_GZIP),
}


def _add_headers(response: Response) -> Response:
    response.headers["Server"] = SERVER
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


def create_app(
    domain_filter: Optional[DomainFilter] = None,
    *,
    ua_database: Optional[UserAgentDatabase] = None,
    sink: Optional[Sink] = None,
) -> Flask:
    """
    Creates the Flask application serving the report endpoints

    Args:
        domain_filter (DomainFilter): The admission filter. Admits every
            report when omitted
        ua_database (UserAgentDatabase): The user agent ruleset
        sink: A function called with the label and the serialized report

    Returns:
        Flask: The application
    """
    if domain_filter is None:
        domain_filter = DomainFilter()
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH

    def make_view(accepted_content_types: Sequence[str]):
        def view():
            content_type = request.content_type
            payload = request.get_data()
            if normalize_content_type(content_type) == TLSRPT_GZIP:
                try:
                    payload = zlib.decompress(payload, zlib.MAX_WBITS | 16)
                except zlib.error as e:
                    logger.error("Invalid gzip payload: {0}".format(e))
                    return "", HTTPStatus.BAD_REQUEST
            status = handle_http_report(
                content_type,
                payload,
                domain_filter,
                user_agent=request.headers.get("User-Agent"),
                accepted_content_types=accepted_content_types,
                sink=sink,
                ua_database=ua_database,
            )
            return "", status

        return view

    for path, accepted_content_types in ENDPOINTS.items():
        app.add_url_rule(
            path,
            endpoint=path.strip("/").replace("-", "_"),
            view_func=make_view(accepted_content_types),
            methods=["POST"],
        )
    app.after_request(_add_headers)

    return app
