# -*- coding: utf-8 -*-

"""A Python package for collecting browser and mail server reports"""

from __future__ import annotations

import json
import math
import re
import threading
import xml.parsers.expat as expat
import zipfile
import zlib
from http import HTTPStatus
from io import BytesIO
from socket import timeout
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
    cast,
)

import mailparser
import xmltodict
from imapclient.exceptions import IMAPClientError

from networkjournal.constants import (
    DEFAULT_CHECK_TIMEOUT,
    DMARC_SEARCH_CRITERIA,
    __version__,
)
from networkjournal.filter import DomainFilter
from networkjournal.log import logger
from networkjournal.mail import MailboxConnection
from networkjournal.types import (
    CSPLegacyReport,
    DecoratedReport,
    DMARCReport,
    ReportBody,
    ReportingAPIReport,
    ReportType,
    Sink,
    SMTPTLSReport,
)
from networkjournal.utils import (
    InvalidURL,
    UserAgentDatabase,
    analyze_url,
    analyze_user_agent,
    decode_base64,
    empty_derived,
)

logger.debug("networkjournal v{0}".format(__version__))

xml_header_regex = re.compile(r"^<\?xml .*?>", re.MULTILINE)
xml_schema_regex = re.compile(r"</??xs:schema.*>", re.MULTILINE)

REPORTS_JSON = "application/reports+json"
CSP_REPORT = "application/csp-report"
TLSRPT_JSON = "application/tlsrpt+json"
TLSRPT_GZIP = "application/tlsrpt+gzip"

PAYLOAD_LOG_LIMIT = 200
MAX_STATUS_CODE = 65535

REPORTING_API_LABELS = {
    "coep": "COEP",
    "coop": "COOP",
    "crash": "Crash",
    "csp-hash": "CSP-Hash",
    "csp-violation": "CSP",
    "deprecation": "Deprecation",
    "integrity-violation": "IntegrityViolation",
    "intervention": "Intervention",
    "network-error": "NEL",
    "permissions-policy-violation": "PermissionsPolicyViolation",
}


class ParserError(RuntimeError):
    """Raised whenever the parser fails for some reason"""


class UnsupportedContentType(ParserError):
    """Raised when a payload is sent with a content type that has no parser"""


class InvalidReport(ParserError):
    """Raised when an invalid Reporting API or CSP report is encountered"""


class InvalidSMTPTLSReport(ParserError):
    """Raised when an invalid SMTP TLS report is encountered"""


class InvalidDMARCReport(ParserError):
    """Raised when an invalid DMARC report is encountered"""


class ReportSerializationError(RuntimeError):
    """Raised when a decorated report cannot be serialized"""


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "a boolean"
    if isinstance(value, (int, float)):
        return "a number"
    if isinstance(value, str):
        return "a string"
    if isinstance(value, list):
        return "a list"
    return "an object"


def _string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("expected a string, got {0}".format(_json_type(value)))
    return value


def _unsigned(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError("expected an unsigned integer, got {0!r}".format(value))
    return value


def _status_code(value: Any) -> int:
    value = _unsigned(value)
    if value > MAX_STATUS_CODE:
        raise ValueError("expected a status code, got {0}".format(value))
    return value


def _boolean(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError("expected a boolean, got {0}".format(_json_type(value)))
    return value


def _fraction(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("expected a number, got {0}".format(_json_type(value)))
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValueError(
            "expected a fraction between 0.0 and 1.0, got {0!r} "
            "(integer percentages are not supported)".format(value)
        )
    return value


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        raise ValueError("expected a list, got {0}".format(_json_type(value)))
    return [_string(item) for item in value]


def _header_map(value: Any) -> Dict[str, List[str]]:
    if not isinstance(value, dict):
        raise ValueError("expected an object, got {0}".format(_json_type(value)))
    headers = {}
    for name, values in value.items():
        try:
            headers[name] = _string_list(values)
        except ValueError as e:
            raise ValueError("header {0!r}: {1}".format(name, e))
    return headers


def _one_of(*tokens: str) -> Callable[[Any], str]:
    def validate(value: Any) -> str:
        if not isinstance(value, str) or value not in tokens:
            raise ValueError(
                "expected one of {0}, got {1!r}".format(", ".join(tokens), value)
            )
        return value

    return validate


def _list_of(validator: Callable[[Any], Any]) -> Callable[[Any], List[Any]]:
    def validate(value: Any) -> List[Any]:
        if not isinstance(value, list):
            raise ValueError("expected a list, got {0}".format(_json_type(value)))
        return [validator(item) for item in value]

    return validate


Field = Tuple[str, Tuple[str, ...], Callable[[Any], Any], bool]


def _field(
    name: str,
    validator: Callable[[Any], Any],
    required: bool = False,
    aliases: Sequence[str] = (),
) -> Field:
    """Describes a canonical field and the names it is accepted under"""
    return name, (name,) + tuple(aliases), validator, required


def _parse_fields(
    source: Any,
    fields: Sequence[Field],
    error_class: type = InvalidReport,
    context: str = "report",
) -> Dict[str, Any]:
    """
    Copies the fields of a decoded document into a dict with canonical keys

    The names of each field are tried in order and the first one with a
    non-null value wins. Optional fields without a value are left out.

    Args:
        source: The decoded JSON object or XML element
        fields (list): Field descriptions built with ``_field()``
        error_class: The ParserError subclass to raise
        context (str): The name of the object, used in error messages

    Returns:
        dict: The validated fields, keyed by canonical name
    """
    if not isinstance(source, dict):
        raise error_class(
            "{0} must be an object, not {1}".format(context, _json_type(source))
        )
    parsed: Dict[str, Any] = {}
    for name, names, validator, required in fields:
        value = None
        for candidate in names:
            if source.get(candidate) is not None:
                value = source[candidate]
                break
        if value is None:
            if required:
                raise error_class(
                    "Missing required {0} field: {1}".format(context, name)
                )
            continue
        try:
            parsed[name] = validator(value)
        except ValueError as e:
            raise error_class("Invalid {0} field {1}: {2}".format(context, name, e))
    return parsed


SOURCE_LOCATION_FIELDS = (
    _field("sourceFile", _string, aliases=("source-file",)),
    _field("lineNumber", _unsigned, aliases=("line-number",)),
    _field("columnNumber", _unsigned, aliases=("column-number",)),
)

CSP_VIOLATION_FIELDS = (
    _field("documentURL", _string, True, ("document-uri", "document_url")),
    _field("referrer", _string),
    _field("blockedURL", _string, aliases=("blocked-uri", "blocked_url")),
    # new in CSP2
    _field("effectiveDirective", _string, True, ("effective-directive",)),
    # removed in CSP3
    _field("violatedDirective", _string, aliases=("violated-directive",)),
    _field("originalPolicy", _string, True, ("original-policy",)),
    _field("sample", _string, aliases=("script-sample",)),
    _field("disposition", _one_of("enforce", "report")),
    _field("statusCode", _status_code, aliases=("status-code",)),
) + SOURCE_LOCATION_FIELDS

CSP_HASH_FIELDS = (
    _field("document_url", _string, True),
    _field("subresource_url", _string, True),
    _field("hash", _string, True),
    _field("type", _string, True),
    _field("destination", _string, True),
)

CRASH_FIELDS = (
    _field("reason", _one_of("oom", "unresponsive"), True),
    _field("stack", _string),
    _field("is_top_level", _boolean),
    _field(
        "visibility_state",
        _one_of("visible", "hidden"),
        aliases=("page_visibility",),
    ),
)

DEPRECATION_FIELDS = (
    _field("id", _string, True),
    _field("anticipatedRemoval", _string, aliases=("anticipated-removal",)),
    _field("message", _string, True),
) + SOURCE_LOCATION_FIELDS

INTEGRITY_VIOLATION_FIELDS = (
    _field("documentURL", _string, True, ("document_url",)),
    _field("blockedURL", _string, True, ("blocked_url",)),
    _field("destination", _string, True),
    _field("reportOnly", _boolean, True, ("report_only",)),
)

INTERVENTION_FIELDS = (
    _field("id", _string, True),
    _field("message", _string, True),
) + SOURCE_LOCATION_FIELDS

NETWORK_ERROR_FIELDS = (
    _field("elapsed_time", _unsigned, True),
    _field("method", _string, True),
    _field("phase", _one_of("dns", "connection", "application"), True),
    _field("protocol", _string, True),
    _field("referrer", _string),
    _field("request_headers", _header_map),
    _field("response_headers", _header_map),
    _field("sampling_fraction", _fraction, True),
    _field("server_ip", _string, True),
    _field("status_code", _status_code, True),
    _field("type", _string, True),
    _field("url", _string),
)

PERMISSIONS_POLICY_VIOLATION_FIELDS = (
    _field("featureId", _string, True),
    _field("disposition", _one_of("enforce", "report"), True),
    _field("message", _string),
) + SOURCE_LOCATION_FIELDS + (
    _field("allowAttribute", _string),
    _field("srcAttribute", _string),
)

COOP_ACCESS_TYPES = (
    "access-to-opener",
    "access-from-coop-page-to-opener",
    "access-from-coop-page-to-openee",
    "access-from-coop-page-to-other",
    "access-to-coop-page-from-opener",
    "access-to-coop-page-from-openee",
    "access-to-coop-page-from-other",
)

COOP_FIELDS = (
    _field("disposition", _one_of("enforce", "reporting"), True),
    _field(
        "effectivePolicy",
        _one_of(
            "unsafe-none",
            "same-origin",
            "same-origin-allow-popups",
            "same-origin-plus-coep",
            "noopener-allow-popups",
        ),
        True,
    ),
    _field(
        "type",
        _one_of("navigation-to-response", "navigation-from-response", *COOP_ACCESS_TYPES),
        True,
    ),
)

COOP_ACCESS_FIELDS = (
    _field("property", _string, True),
    _field("openerURL", _string),
    _field("openedWindowURL", _string),
    _field("openedWindowInitialURL", _string),
    _field("otherURL", _string),
)

COOP_NAVIGATION_FIELDS = {
    "navigation-to-response": (_field("previousResponseURL", _string),),
    "navigation-from-response": (_field("nextResponseURL", _string),),
}

COOP_COMMON_FIELDS = (_field("referrer", _string),) + SOURCE_LOCATION_FIELDS

COEP_FIELDS = (
    _field("type", _string, True),
    _field("blockedURL", _string, True),
    _field("disposition", _one_of("enforce", "reporting"), True),
    _field("destination", _string),
)


def _parse_coop_body(body: Any) -> Dict[str, Any]:
    parsed = _parse_fields(body, COOP_FIELDS, context="coop body")
    type_fields = COOP_NAVIGATION_FIELDS.get(parsed["type"], COOP_ACCESS_FIELDS)
    parsed.update(
        _parse_fields(body, type_fields + COOP_COMMON_FIELDS, context="coop body")
    )
    return parsed


def _body_parser(kind: str, fields: Sequence[Field]) -> Callable[[Any], Dict[str, Any]]:
    context = "{0} body".format(kind)

    def parse(body: Any) -> Dict[str, Any]:
        return _parse_fields(body, fields, context=context)

    return parse


REPORT_BODY_PARSERS: Dict[str, Callable[[Any], Dict[str, Any]]] = {
    "coep": _body_parser("coep", COEP_FIELDS),
    "coop": _parse_coop_body,
    "crash": _body_parser("crash", CRASH_FIELDS),
    "csp-hash": _body_parser("csp-hash", CSP_HASH_FIELDS),
    "csp-violation": _body_parser("csp-violation", CSP_VIOLATION_FIELDS),
    "deprecation": _body_parser("deprecation", DEPRECATION_FIELDS),
    "integrity-violation": _body_parser(
        "integrity-violation", INTEGRITY_VIOLATION_FIELDS
    ),
    "intervention": _body_parser("intervention", INTERVENTION_FIELDS),
    "network-error": _body_parser("network-error", NETWORK_ERROR_FIELDS),
    "permissions-policy-violation": _body_parser(
        "permissions-policy-violation", PERMISSIONS_POLICY_VIOLATION_FIELDS
    ),
}

ENVELOPE_FIELDS = (
    _field("type", _one_of(*REPORT_BODY_PARSERS.keys()), True),
    _field("age", _unsigned),
    _field("url", _string, True),
    _field("user_agent", _string),
)


def _load_json(payload: Union[str, bytes], error_class: type) -> Any:
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        return json.loads(payload)
    except ValueError as e:
        raise error_class("Invalid JSON: {0}".format(e))
    except RecursionError:
        raise error_class("Invalid JSON: nested too deeply")


def parse_report_body(kind: str, body: Any) -> ReportBody:
    """
    Parses and validates the body of a Reporting API report

    Args:
        kind (str): The report's ``type``
        body: The decoded ``body`` object

    Returns:
        dict: The body, keyed by canonical field names
    """
    if kind not in REPORT_BODY_PARSERS:
        raise InvalidReport("Unknown report type {0!r}".format(kind))
    return cast(ReportBody, REPORT_BODY_PARSERS[kind](body))


def parse_reporting_api_report(report: Any) -> ReportingAPIReport:
    """Parses and validates a single decoded Reporting API report"""
    envelope = _parse_fields(report, ENVELOPE_FIELDS)
    if report.get("body") is None:
        raise InvalidReport("Missing required report field: body")
    new_report: Dict[str, Any] = {
        "type": envelope["type"],
        "body": parse_report_body(envelope["type"], report["body"]),
    }
    for key in ("age", "url", "user_agent"):
        if key in envelope:
            new_report[key] = envelope[key]
    return cast(ReportingAPIReport, new_report)


def iter_reporting_api_reports(
    payload: Union[str, bytes],
) -> Iterator[ReportingAPIReport]:
    """
    Parses an ``application/reports+json`` payload one report at a time

    The payload is either a single report object or a list of them. Reports
    are yielded in order, and an ``InvalidReport`` is raised when the first
    invalid report is reached.

    Args:
        payload: The request body

    Yields:
        dict: Parsed Reporting API reports
    """
    batch = _load_json(payload, InvalidReport)
    if isinstance(batch, dict):
        batch = [batch]
    elif not isinstance(batch, list):
        raise InvalidReport(
            "Expected a report or a list of reports, not {0}".format(_json_type(batch))
        )
    for i, report in enumerate(batch):
        try:
            parsed_report = parse_reporting_api_report(report)
        except InvalidReport as e:
            raise InvalidReport("Report {0} of {1}: {2}".format(i + 1, len(batch), e))
        yield parsed_report


def parse_reporting_api_json(payload: Union[str, bytes]) -> List[ReportingAPIReport]:
    """Parses and validates every report of an ``application/reports+json``
    payload"""
    return list(iter_reporting_api_reports(payload))


def _parse_csp_violation(violation: Any) -> Dict[str, Any]:
    return _parse_fields(violation, CSP_VIOLATION_FIELDS, context="csp-report")


CSP_LEGACY_REPORT_FIELDS = (
    _field("csp-report", _parse_csp_violation, True, ("csp_report",)),
)


def parse_csp_report_json(payload: Union[str, bytes]) -> CSPLegacyReport:
    """Parses and validates an ``application/csp-report`` payload"""
    report = _load_json(payload, InvalidReport)
    return cast(CSPLegacyReport, _parse_fields(report, CSP_LEGACY_REPORT_FIELDS))


def _smtp_tls_object(
    fields: Sequence[Field], context: str
) -> Callable[[Any], Dict[str, Any]]:
    def parse(value: Any) -> Dict[str, Any]:
        return _parse_fields(value, fields, InvalidSMTPTLSReport, context)

    return parse


SMTP_TLS_POLICY_DESCRIPTION_FIELDS = (
    _field("policy-type", _one_of("tlsa", "sts", "no-policy-found"), True),
    _field("policy-string", _string_list),
    _field("policy-domain", _string, True),
    _field("mx-host", _string_list, aliases=("mx-host-pattern",)),
)

SMTP_TLS_SUMMARY_FIELDS = (
    _field("total-successful-session-count", _unsigned, True),
    _field("total-failure-session-count", _unsigned, True),
)

SMTP_TLS_FAILURE_DETAILS_FIELDS = (
    _field("result-type", _string, True),
    _field("sending-mta-ip", _string),
    _field("receiving-mx-hostname", _string),
    _field("receiving-mx-helo", _string),
    _field("receiving-ip", _string),
    _field("failed-session-count", _unsigned, True),
    _field("additional-info-uri", _string, aliases=("additional-information",)),
    _field("failure-reason-code", _string),
)

SMTP_TLS_POLICY_FIELDS = (
    _field(
        "policy",
        _smtp_tls_object(SMTP_TLS_POLICY_DESCRIPTION_FIELDS, "policy"),
        True,
    ),
    _field("summary", _smtp_tls_object(SMTP_TLS_SUMMARY_FIELDS, "summary"), True),
    _field(
        "failure-details",
        _list_of(
            _smtp_tls_object(SMTP_TLS_FAILURE_DETAILS_FIELDS, "failure-details")
        ),
    ),
)

SMTP_TLS_DATE_RANGE_FIELDS = (
    _field("start-datetime", _string, True),
    _field("end-datetime", _string, True),
)

SMTP_TLS_REPORT_FIELDS = (
    _field("organization-name", _string, True),
    _field(
        "date-range", _smtp_tls_object(SMTP_TLS_DATE_RANGE_FIELDS, "date-range"), True
    ),
    _field("contact-info", _string, True),
    _field("report-id", _string, True),
    _field(
        "policies",
        _list_of(_smtp_tls_object(SMTP_TLS_POLICY_FIELDS, "policies")),
        True,
    ),
)


def parse_smtp_tls_report_json(report: Union[str, bytes]) -> SMTPTLSReport:
    """Parses and validates an SMTP TLS report"""
    report_dict = _load_json(report, InvalidSMTPTLSReport)
    return cast(
        SMTPTLSReport,
        _parse_fields(
            report_dict, SMTP_TLS_REPORT_FIELDS, InvalidSMTPTLSReport, "report"
        ),
    )


def get_policy_domains(report: SMTPTLSReport) -> List[str]:
    """Returns the policy domains of an SMTP TLS report, in order"""
    return [policy["policy"]["policy-domain"] for policy in report["policies"]]


def _xml_text(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("#text")
    if isinstance(value, list):
        raise ValueError("expected a single element, got {0}".format(len(value)))
    if not isinstance(value, str):
        raise ValueError("expected text, got {0}".format(_json_type(value)))
    return value


def _xml_unsigned(value: Any) -> int:
    text = _xml_text(value).strip()
    if not text.isdigit():
        raise ValueError("expected an unsigned integer, got {0!r}".format(text))
    return int(text)


def _xml_percentage(value: Any) -> int:
    percentage = _xml_unsigned(value)
    if percentage > 100:
        raise ValueError("expected a percentage, got {0}".format(percentage))
    return percentage


def _xml_float(value: Any) -> float:
    text = _xml_text(value)
    number = float(text)
    if not math.isfinite(number):
        raise ValueError("expected a finite number, got {0!r}".format(text))
    return number


def _xml_token(*tokens: str) -> Callable[[Any], str]:
    validate = _one_of(*tokens)

    def parse(value: Any) -> str:
        return validate(_xml_text(value))

    return parse


def _xml_element(
    fields: Sequence[Field], context: str
) -> Callable[[Any], Dict[str, Any]]:
    def parse(value: Any) -> Dict[str, Any]:
        if isinstance(value, list):
            raise ValueError("expected a single element, got {0}".format(len(value)))
        return _parse_fields(value, fields, InvalidDMARCReport, context)

    return parse


def _xml_list(validator: Callable[[Any], Any]) -> Callable[[Any], List[Any]]:
    def parse(value: Any) -> List[Any]:
        if not isinstance(value, list):
            value = [value]
        return [validator(item) for item in value if item is not None]

    return parse


DISPOSITIONS = ("none", "quarantine", "reject")
ALIGNMENTS = ("r", "s")
DMARC_RESULTS = ("pass", "fail")
DKIM_RESULTS = ("none", "pass", "fail", "policy", "neutral", "temperror", "permerror")
SPF_RESULTS = (
    "none",
    "neutral",
    "pass",
    "fail",
    "softfail",
    "temperror",
    "permerror",
)
SPF_SCOPES = ("helo", "mfrom")
POLICY_OVERRIDE_TYPES = (
    "forwarded",
    "sampled_out",
    "trusted_forwarder",
    "mailing_list",
    "local_policy",
    "other",
)

DMARC_DATE_RANGE_FIELDS = (
    _field("begin", _xml_unsigned, True),
    _field("end", _xml_unsigned, True),
)

DMARC_REPORT_METADATA_FIELDS = (
    _field("org_name", _xml_text, True),
    _field("email", _xml_text, True),
    _field("extra_contact_info", _xml_text),
    _field("report_id", _xml_text, True),
    _field("date_range", _xml_element(DMARC_DATE_RANGE_FIELDS, "date_range"), True),
    _field("error", _xml_list(_xml_text)),
)

DMARC_POLICY_PUBLISHED_FIELDS = (
    _field("domain", _xml_text, True),
    _field("adkim", _xml_token(*ALIGNMENTS)),
    _field("aspf", _xml_token(*ALIGNMENTS)),
    _field("p", _xml_token(*DISPOSITIONS), True),
    _field("sp", _xml_token(*DISPOSITIONS)),
    _field("pct", _xml_percentage),
    _field("fo", _xml_text),
)

DMARC_POLICY_OVERRIDE_REASON_FIELDS = (
    _field("type", _xml_token(*POLICY_OVERRIDE_TYPES), True),
    _field("comment", _xml_text),
)

DMARC_POLICY_EVALUATED_FIELDS = (
    _field("disposition", _xml_token(*DISPOSITIONS), True),
    _field("dkim", _xml_token(*DMARC_RESULTS), True),
    _field("spf", _xml_token(*DMARC_RESULTS), True),
    _field(
        "reason",
        _xml_list(_xml_element(DMARC_POLICY_OVERRIDE_REASON_FIELDS, "reason")),
    ),
)

DMARC_ROW_FIELDS = (
    _field("source_ip", _xml_text, True),
    _field("count", _xml_unsigned, True),
    _field(
        "policy_evaluated",
        _xml_element(DMARC_POLICY_EVALUATED_FIELDS, "policy_evaluated"),
    ),
)

DMARC_IDENTIFIERS_FIELDS = (
    _field("envelope_to", _xml_text),
    _field("envelope_from", _xml_text),
    _field("header_from", _xml_text, True),
)

DMARC_DKIM_AUTH_RESULT_FIELDS = (
    _field("domain", _xml_text, True),
    _field("selector", _xml_text),
    _field("result", _xml_token(*DKIM_RESULTS), True),
    _field("human_result", _xml_text),
)

DMARC_SPF_AUTH_RESULT_FIELDS = (
    _field("domain", _xml_text, True),
    _field("scope", _xml_token(*SPF_SCOPES)),
    _field("result", _xml_token(*SPF_RESULTS), True),
    _field("human_result", _xml_text),
)

DMARC_AUTH_RESULTS_FIELDS = (
    _field("dkim", _xml_list(_xml_element(DMARC_DKIM_AUTH_RESULT_FIELDS, "dkim"))),
    _field(
        "spf", _xml_list(_xml_element(DMARC_SPF_AUTH_RESULT_FIELDS, "spf")), True
    ),
)

DMARC_RECORD_FIELDS = (
    _field("row", _xml_element(DMARC_ROW_FIELDS, "row"), True),
    _field(
        "identifiers", _xml_element(DMARC_IDENTIFIERS_FIELDS, "identifiers"), True
    ),
    _field(
        "auth_results", _xml_element(DMARC_AUTH_RESULTS_FIELDS, "auth_results"), True
    ),
)

DMARC_FEEDBACK_FIELDS = (
    _field("version", _xml_float),
    _field(
        "report_metadata",
        _xml_element(DMARC_REPORT_METADATA_FIELDS, "report_metadata"),
        True,
    ),
    _field(
        "policy_published",
        _xml_element(DMARC_POLICY_PUBLISHED_FIELDS, "policy_published"),
        True,
    ),
    _field(
        "records",
        _xml_list(_xml_element(DMARC_RECORD_FIELDS, "record")),
        aliases=("record",),
    ),
)


def parse_dmarc_report_xml(xml: Union[str, bytes]) -> DMARCReport:
    """Parses a DMARC aggregate report XML string

    Args:
        xml (str): A string of DMARC aggregate report XML

    Returns:
        dict: The parsed report, keyed by the RFC 7489 element names with the
        ``record`` elements collected in ``records``

    Raises:
        InvalidDMARCReport: the XML is malformed or does not follow the schema
    """
    if isinstance(xml, bytes):
        try:
            xml = xml.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidDMARCReport("Report is not valid UTF-8: {0}".format(e))
    try:
        # Replace XML header (sometimes they are invalid)
        xml = xml_header_regex.sub('<?xml version="1.0"?>', xml.strip())

        # Remove invalid schema tags
        xml = xml_schema_regex.sub("", xml)

        document = xmltodict.parse(xml)
    except expat.ExpatError as e:
        raise InvalidDMARCReport("Invalid XML: {0}".format(e))
    if not isinstance(document, dict) or "feedback" not in document:
        raise InvalidDMARCReport("Missing feedback element")
    report = _parse_fields(
        document["feedback"], DMARC_FEEDBACK_FIELDS, InvalidDMARCReport, "feedback"
    )
    report.setdefault("records", [])
    return cast(DMARCReport, report)


def get_published_policy_domain(report: DMARCReport) -> str:
    """Returns the domain of a DMARC report's published policy"""
    return report["policy_published"]["domain"]


def get_sender_organization(report: DMARCReport) -> str:
    """Returns the name of the organization that sent a DMARC report"""
    return report["report_metadata"]["org_name"]


def extract_report(content: bytes, content_type: str) -> Optional[str]:
    """
    Extracts the text of a DMARC report from an e-mail attachment

    Args:
        content (bytes): The decoded attachment payload
        content_type (str): The declared MIME type of the attachment

    Returns:
        str: The report XML, or ``None`` when the attachment is not of a type
        DMARC reports are sent as

    """
    content_type = content_type.lower()
    try:
        if content_type == "text/xml":
            report = content
        elif content_type == "application/gzip":
            report = zlib.decompress(content, zlib.MAX_WBITS | 16)
        elif content_type == "application/zip":
            _zip = zipfile.ZipFile(BytesIO(content))
            report = _zip.open(_zip.namelist()[0]).read()
        else:
            logger.debug("Unexpected attachment content type: {0}".format(content_type))
            return None
        return report.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidDMARCReport("Report is not valid UTF-8: {0}".format(e))
    except Exception as error:
        raise InvalidDMARCReport("Invalid archive file: {0}".format(error.__str__()))


def _get_attachment_content(attachment: Dict[str, Any]) -> bytes:
    payload = attachment["payload"]
    if not attachment["binary"]:
        return payload.encode("utf-8")
    return decode_base64(payload)


def parse_dmarc_report_email(input_: Union[bytes, str]) -> Optional[DMARCReport]:
    """
    Parses a DMARC aggregate report from an e-mail

    Only the first attachment is looked at, and of a zip archive only the
    first file.

    Args:
        input_: An e-mail in RFC 822 format, as bytes or a string

    Returns:
        dict: The parsed report, or ``None`` when the e-mail has no
        attachment a report could be in
    """
    try:
        if isinstance(input_, bytes):
            msg = mailparser.parse_from_bytes(input_)
        else:
            msg = mailparser.parse_from_string(input_)
    except Exception as e:
        raise InvalidDMARCReport("Unable to parse e-mail: {0}".format(e.__str__()))

    logger.debug("Parsing mail with subject {0!r}".format(msg.subject))
    attachments = msg.attachments
    if len(attachments) == 0:
        logger.debug("No attachment found")
        return None
    attachment = attachments[0]
    try:
        content = _get_attachment_content(attachment)
    except (ValueError, TypeError) as e:
        raise InvalidDMARCReport("Unable to decode attachment: {0}".format(e))
    xml = extract_report(content, attachment["mail_content_type"])
    if xml is None:
        return None
    return parse_dmarc_report_xml(xml)


def log_report(label: str, serialized_report: str) -> None:
    """Writes an admitted report to the journal"""
    logger.info("{0} {1}".format(label, serialized_report))


def _serialize(decorated: DecoratedReport) -> str:
    try:
        return json.dumps(decorated, ensure_ascii=False, indent=2, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ReportSerializationError("Unable to serialize report: {0}".format(e))


def _analyze_url_into(derived: Dict[str, Any], url: str) -> None:
    try:
        derived["url"] = analyze_url(url)
    except InvalidURL as e:
        logger.debug(e.__str__())


def handle_report(
    report: Any,
    report_type: ReportType,
    domain_filter: DomainFilter,
    *,
    user_agent: Optional[str] = None,
    sink: Optional[Sink] = None,
    ua_database: Optional[UserAgentDatabase] = None,
) -> bool:
    """
    Decorates a parsed report, filters it and sends it to the sink

    Args:
        report (dict): A parsed report
        report_type (str): ``reporting_api``, ``csp``, ``smtp_tls`` or
            ``dmarc``
        domain_filter (DomainFilter): The admission filter
        user_agent (str): The User-Agent of the transport, if any
        sink: A function called with the label and the serialized report.
            Defaults to ``log_report()``
        ua_database (UserAgentDatabase): The user agent ruleset

    Returns:
        bool: ``True`` if the report was emitted, ``False`` if it was
        filtered

    Raises:
        ReportSerializationError: the decorated report could not be
        serialized
    """
    if sink is None:
        sink = log_report
    derived = empty_derived()
    if user_agent is not None:
        (
            derived["client"],
            derived["os"],
            derived["device"],
        ) = analyze_user_agent(user_agent, ua_database)

    if report_type == "reporting_api":
        if not domain_filter.is_domain_of_url_allowed(report["url"]):
            return False
        _analyze_url_into(derived, report["url"])
        if report.get("user_agent") is not None:
            (
                derived["client"],
                derived["os"],
                derived["device"],
            ) = analyze_user_agent(report["user_agent"], ua_database)
        label = REPORTING_API_LABELS[report["type"]]
    elif report_type == "csp":
        document_url = report["csp-report"]["documentURL"]
        if not domain_filter.is_domain_of_url_allowed(document_url):
            return False
        _analyze_url_into(derived, document_url)
        label = "CSP"
    elif report_type == "smtp_tls":
        policy_domains = get_policy_domains(report)
        host = policy_domains[0] if policy_domains else None
        derived["url"]["host"] = host
        if host is not None and not domain_filter.is_domain_allowed(host):
            return False
        label = "SMTP-TLS-RPT"
    elif report_type == "dmarc":
        host = get_published_policy_domain(report)
        derived["url"]["host"] = host
        if not domain_filter.is_domain_allowed(host):
            return False
        derived["client"] = {"family": get_sender_organization(report)}
        label = "DMARC"
    else:
        raise ValueError("Unknown report type {0!r}".format(report_type))

    decorated: DecoratedReport = {"report": report, "derived": derived}
    sink(label, _serialize(decorated))
    return True


def _parse_csp_payload(payload: Union[str, bytes]) -> List[CSPLegacyReport]:
    return [parse_csp_report_json(payload)]


def _parse_smtp_tls_payload(payload: Union[str, bytes]) -> List[SMTPTLSReport]:
    return [parse_smtp_tls_report_json(payload)]


CONTENT_TYPE_PARSERS: Dict[
    str, Tuple[ReportType, Callable[[Union[str, bytes]], Iterable[Any]]]
] = {
    REPORTS_JSON: ("reporting_api", iter_reporting_api_reports),
    CSP_REPORT: ("csp", _parse_csp_payload),
    TLSRPT_JSON: ("smtp_tls", _parse_smtp_tls_payload),
    # decompressed by the transport
    TLSRPT_GZIP: ("smtp_tls", _parse_smtp_tls_payload),
}


def normalize_content_type(content_type: Optional[str]) -> str:
    """Strips parameters from a Content-Type value and lowercases it"""
    if content_type is None:
        return ""
    return content_type.split(";")[0].strip().lower()


def get_payload_parser(
    content_type: Optional[str],
    accepted_content_types: Optional[Iterable[str]] = None,
) -> Tuple[ReportType, Callable[[Union[str, bytes]], Iterable[Any]]]:
    """
    Looks up the parser for a payload's content type

    Args:
        content_type (str): The declared Content-Type
        accepted_content_types (list): The content types an endpoint
            accepts. All known content types when omitted

    Returns:
        tuple: The report type and the parser function

    Raises:
        UnsupportedContentType: there is no parser for the content type
    """
    mime_type = normalize_content_type(content_type)
    if accepted_content_types is not None and mime_type not in accepted_content_types:
        raise UnsupportedContentType(
            "Unsupported content type {0!r}".format(mime_type)
        )
    if mime_type not in CONTENT_TYPE_PARSERS:
        raise UnsupportedContentType(
            "Unsupported content type {0!r}".format(mime_type)
        )
    return CONTENT_TYPE_PARSERS[mime_type]


def parse_payload(
    content_type: Optional[str], payload: Union[str, bytes]
) -> Tuple[ReportType, List[Any]]:
    """Parses and validates every report in a payload

    Returns:
        tuple: The report type and a list of the parsed reports
    """
    report_type, parser = get_payload_parser(content_type)
    return report_type, list(parser(payload))


def handle_http_report(
    content_type: Optional[str],
    payload: Union[str, bytes],
    domain_filter: DomainFilter,
    *,
    user_agent: Optional[str] = None,
    accepted_content_types: Optional[Iterable[str]] = None,
    sink: Optional[Sink] = None,
    ua_database: Optional[UserAgentDatabase] = None,
) -> HTTPStatus:
    """
    Parses, filters and emits the reports of a request body

    Reports of a Reporting API batch are emitted in order until the first
    one that fails, and the rest of the batch is not processed.

    Args:
        content_type (str): The request's Content-Type
        payload: The request body, already decompressed
        domain_filter (DomainFilter): The admission filter
        user_agent (str): The request's User-Agent
        accepted_content_types (list): The content types the endpoint accepts
        sink: A function called with the label and the serialized report
        ua_database (UserAgentDatabase): The user agent ruleset

    Returns:
        HTTPStatus: ``OK``, or ``BAD_REQUEST`` if the request is rejected
    """
    try:
        report_type, parser = get_payload_parser(content_type, accepted_content_types)
    except UnsupportedContentType as e:
        logger.warning(e.__str__())
        return HTTPStatus.BAD_REQUEST
    try:
        for report in parser(payload):
            handle_report(
                report,
                report_type,
                domain_filter,
                user_agent=user_agent,
                sink=sink,
                ua_database=ua_database,
            )
    except ParserError as e:
        logger.error("Failed to parse report: {0}".format(e))
        logger.debug("Rejected payload: {0!r}".format(payload[:PAYLOAD_LOG_LIMIT]))
        return HTTPStatus.BAD_REQUEST
    except ReportSerializationError as e:
        logger.error("Failed to handle report: {0}".format(e))
        return HTTPStatus.BAD_REQUEST
    return HTTPStatus.OK


def get_dmarc_reports_from_mailbox(
    connection: MailboxConnection,
    *,
    reports_folder: str = "INBOX",
    criteria: Optional[Sequence[str]] = None,
) -> List[DMARCReport]:
    """
    Fetches and parses DMARC reports from a mailbox

    Messages that cannot be parsed are logged and skipped.

    Args:
        connection: A Mailbox connection object
        reports_folder (str): The folder where reports can be found
        criteria (list): IMAP search criteria. Unanswered, unseen,
            undeleted, non-draft messages with ``Report Domain:`` in the
            subject by default

    Returns:
        list: The parsed DMARC reports
    """
    if criteria is None:
        criteria = DMARC_SEARCH_CRITERIA
    messages = connection.fetch_messages(reports_folder, criteria)
    logger.debug("Found {0} messages in {1}".format(len(messages), reports_folder))
    if len(messages) == 0:
        return []
    raw_messages = connection.fetch_raw_messages(messages)
    total_messages = len(raw_messages)
    reports = []
    for i, raw_message in enumerate(raw_messages):
        logger.debug("Processing message {0} of {1}".format(i + 1, total_messages))
        try:
            report = parse_dmarc_report_email(raw_message)
        except ParserError as error:
            logger.warning(error.__str__())
            continue
        if report is not None:
            reports.append(report)
    return reports


def check_mailbox(
    connect: Callable[[], MailboxConnection],
    domain_filter: DomainFilter,
    *,
    reports_folder: str = "INBOX",
    sink: Optional[Sink] = None,
    ua_database: Optional[UserAgentDatabase] = None,
    stop_event: Optional[threading.Event] = None,
) -> int:
    """
    Connects to the mailbox once and emits the DMARC reports found there

    Errors are logged and never raised, so the next check can retry.

    Args:
        connect: A function returning a new, logged in MailboxConnection
        domain_filter (DomainFilter): The admission filter
        reports_folder (str): The folder where reports can be found
        sink: A function called with the label and the serialized report
        ua_database (UserAgentDatabase): The user agent ruleset
        stop_event (threading.Event): Stops processing between messages

    Returns:
        int: The number of emitted reports
    """
    try:
        connection = connect()
    except (timeout, IMAPClientError) as e:
        logger.error("IMAP connection error: {0}".format(e))
        return 0
    except Exception as e:
        logger.error("Mailbox connection error: {0}".format(e))
        return 0

    emitted = 0
    try:
        if stop_event is None or not stop_event.is_set():
            reports = get_dmarc_reports_from_mailbox(
                connection, reports_folder=reports_folder
            )
            for report in reports:
                if stop_event is not None and stop_event.is_set():
                    logger.debug("Stopping mailbox check")
                    break
                try:
                    if handle_report(
                        report,
                        "dmarc",
                        domain_filter,
                        sink=sink,
                        ua_database=ua_database,
                    ):
                        emitted += 1
                except ReportSerializationError as e:
                    logger.error(e.__str__())
    except Exception as e:
        logger.error("Mailbox error: {0}".format(e))
    finally:
        try:
            connection.logout()
        except Exception as e:
            logger.error("Mailbox logout error: {0}".format(e))
    return emitted


def watch_inbox(
    connect: Callable[[], MailboxConnection],
    domain_filter: DomainFilter,
    *,
    reports_folder: str = "INBOX",
    check_timeout: float = DEFAULT_CHECK_TIMEOUT,
    stop_event: Optional[threading.Event] = None,
    sink: Optional[Sink] = None,
    ua_database: Optional[UserAgentDatabase] = None,
):
    """
    Checks the mailbox for DMARC reports until stopped

    Args:
        connect: A function returning a new, logged in MailboxConnection
        domain_filter (DomainFilter): The admission filter
        reports_folder (str): The folder where reports can be found
        check_timeout (float): Number of seconds to wait between checks
        stop_event (threading.Event): Set to stop watching. Interrupts the
            wait between checks
        sink: A function called with the label and the serialized report
        ua_database (UserAgentDatabase): The user agent ruleset
    """
    if stop_event is None:
        stop_event = threading.Event()
    while not stop_event.is_set():
        check_mailbox(
            connect,
            domain_filter,
            reports_folder=reports_folder,
            sink=sink,
            ua_database=ua_database,
            stop_event=stop_event,
        )
        stop_event.wait(check_timeout)
