from __future__ import annotations

from typing import Callable, Dict, List, Literal, Optional, TypedDict, Union

# NOTE: This module is intentionally Python 3.9 compatible.
# - No PEP 604 unions (A | B)
# - No typing.NotRequired / Required (3.11+) to avoid an extra dependency.
#   For optional keys, use total=False TypedDicts.
# Keys are the canonical wire names, so several shapes use the functional
# TypedDict syntax.


ReportType = Literal["reporting_api", "csp", "smtp_tls", "dmarc"]

ReportKind = Literal[
    "coep",
    "coop",
    "crash",
    "csp-hash",
    "csp-violation",
    "deprecation",
    "integrity-violation",
    "intervention",
    "network-error",
    "permissions-policy-violation",
]

Sink = Callable[[str, str], None]


class CSPViolation(TypedDict, total=False):
    documentURL: str
    referrer: str
    blockedURL: str
    effectiveDirective: str
    violatedDirective: str
    originalPolicy: str
    sample: str
    disposition: Literal["enforce", "report"]
    statusCode: int
    sourceFile: str
    lineNumber: int
    columnNumber: int


CSPLegacyReport = TypedDict("CSPLegacyReport", {"csp-report": CSPViolation})


class CSPHash(TypedDict):
    document_url: str
    subresource_url: str
    hash: str
    type: str
    destination: str


class Crash(TypedDict, total=False):
    reason: Literal["oom", "unresponsive"]
    stack: str
    is_top_level: bool
    visibility_state: Literal["visible", "hidden"]


class Deprecation(TypedDict, total=False):
    id: str
    anticipatedRemoval: str
    message: str
    sourceFile: str
    lineNumber: int
    columnNumber: int


class IntegrityViolation(TypedDict):
    documentURL: str
    blockedURL: str
    destination: str
    reportOnly: bool


class Intervention(TypedDict, total=False):
    id: str
    message: str
    sourceFile: str
    lineNumber: int
    columnNumber: int


class NetworkError(TypedDict, total=False):
    elapsed_time: int
    method: str
    phase: Literal["dns", "connection", "application"]
    protocol: str
    referrer: str
    request_headers: Dict[str, List[str]]
    response_headers: Dict[str, List[str]]
    sampling_fraction: float
    server_ip: str
    status_code: int
    type: str
    url: str


class PermissionsPolicyViolation(TypedDict, total=False):
    featureId: str
    disposition: Literal["enforce", "report"]
    message: str
    sourceFile: str
    lineNumber: int
    columnNumber: int
    allowAttribute: str
    srcAttribute: str


class CrossOriginOpenerPolicyViolation(TypedDict, total=False):
    disposition: Literal["enforce", "reporting"]
    effectivePolicy: str
    type: str
    property: str
    openerURL: str
    openedWindowURL: str
    openedWindowInitialURL: str
    otherURL: str
    previousResponseURL: str
    nextResponseURL: str
    referrer: str
    sourceFile: str
    lineNumber: int
    columnNumber: int


class CrossOriginEmbedderPolicyViolation(TypedDict, total=False):
    type: str
    blockedURL: str
    disposition: Literal["enforce", "reporting"]
    destination: str


ReportBody = Union[
    CrossOriginEmbedderPolicyViolation,
    CrossOriginOpenerPolicyViolation,
    Crash,
    CSPHash,
    CSPViolation,
    Deprecation,
    IntegrityViolation,
    Intervention,
    NetworkError,
    PermissionsPolicyViolation,
]


class ReportingAPIReportRequired(TypedDict):
    type: ReportKind
    body: ReportBody
    url: str


class ReportingAPIReport(ReportingAPIReportRequired, total=False):
    age: int
    user_agent: str


SMTPTLSDateRange = TypedDict(
    "SMTPTLSDateRange",
    {
        "start-datetime": str,
        "end-datetime": str,
    },
)

SMTPTLSPolicyDescription = TypedDict(
    "SMTPTLSPolicyDescription",
    {
        "policy-type": Literal["tlsa", "sts", "no-policy-found"],
        "policy-string": List[str],
        "policy-domain": str,
        "mx-host": List[str],
    },
    total=False,
)

SMTPTLSSummary = TypedDict(
    "SMTPTLSSummary",
    {
        "total-successful-session-count": int,
        "total-failure-session-count": int,
    },
)

SMTPTLSFailureDetails = TypedDict(
    "SMTPTLSFailureDetails",
    {
        "result-type": str,
        "sending-mta-ip": str,
        "receiving-mx-hostname": str,
        "receiving-mx-helo": str,
        "receiving-ip": str,
        "failed-session-count": int,
        "additional-info-uri": str,
        "failure-reason-code": str,
    },
    total=False,
)

SMTPTLSPolicy = TypedDict(
    "SMTPTLSPolicy",
    {
        "policy": SMTPTLSPolicyDescription,
        "summary": SMTPTLSSummary,
        "failure-details": List[SMTPTLSFailureDetails],
    },
    total=False,
)

SMTPTLSReport = TypedDict(
    "SMTPTLSReport",
    {
        "organization-name": str,
        "date-range": SMTPTLSDateRange,
        "contact-info": str,
        "report-id": str,
        "policies": List[SMTPTLSPolicy],
    },
)


class DMARCDateRange(TypedDict):
    begin: int
    end: int


class DMARCReportMetadata(TypedDict, total=False):
    org_name: str
    email: str
    extra_contact_info: str
    report_id: str
    date_range: DMARCDateRange
    error: List[str]


class DMARCPolicyPublished(TypedDict, total=False):
    domain: str
    adkim: Literal["r", "s"]
    aspf: Literal["r", "s"]
    p: Literal["none", "quarantine", "reject"]
    sp: Literal["none", "quarantine", "reject"]
    pct: int
    fo: str


class DMARCPolicyOverrideReason(TypedDict, total=False):
    type: str
    comment: str


class DMARCPolicyEvaluated(TypedDict, total=False):
    disposition: Literal["none", "quarantine", "reject"]
    dkim: Literal["pass", "fail"]
    spf: Literal["pass", "fail"]
    reason: List[DMARCPolicyOverrideReason]


class DMARCRow(TypedDict, total=False):
    source_ip: str
    count: int
    policy_evaluated: DMARCPolicyEvaluated


class DMARCIdentifiers(TypedDict, total=False):
    envelope_to: str
    envelope_from: str
    header_from: str


class DMARCAuthResultDKIM(TypedDict, total=False):
    domain: str
    selector: str
    result: str
    human_result: str


class DMARCAuthResultSPF(TypedDict, total=False):
    domain: str
    scope: Literal["helo", "mfrom"]
    result: str
    human_result: str


class DMARCAuthResults(TypedDict, total=False):
    dkim: List[DMARCAuthResultDKIM]
    spf: List[DMARCAuthResultSPF]


class DMARCRecord(TypedDict):
    row: DMARCRow
    identifiers: DMARCIdentifiers
    auth_results: DMARCAuthResults


class DMARCReport(TypedDict, total=False):
    version: float
    report_metadata: DMARCReportMetadata
    policy_published: DMARCPolicyPublished
    records: List[DMARCRecord]


class UserAgentComponent(TypedDict, total=False):
    family: str
    major: str
    minor: str
    patch: str
    patch_minor: str


class DeviceComponent(TypedDict, total=False):
    family: str
    brand: str
    model: str


class UrlComponent(TypedDict, total=False):
    host: Optional[str]
    path: str
    query: str


class Derived(TypedDict):
    client: UserAgentComponent
    os: UserAgentComponent
    device: DeviceComponent
    url: UrlComponent


AnyReport = Union[ReportingAPIReport, CSPLegacyReport, SMTPTLSReport, DMARCReport]


class DecoratedReport(TypedDict):
    report: AnyReport
    derived: Derived


