import gzip
import json
import os
import tempfile
import threading
import unittest
import zipfile
from argparse import Namespace
from email.message import EmailMessage
from glob import glob
from http import HTTPStatus
from io import BytesIO

import networkjournal
import networkjournal.cli
import networkjournal.utils
from networkjournal.filter import DomainFilter
from networkjournal.mail import MailboxConnection
from networkjournal.web import create_app

CHROME_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/87.0.4280.141 Safari/537.36"
)

CRASH_REPORT = (
    '{"type":"crash","age":42,"url":"https://example.com/",'
    '"user_agent":"UA-X","body":{"reason":"oom"}}'
)

DMARC_SAMPLE = "samples/aggregate/example.net!example.com!1538204542!1538463818.xml"
SMTP_TLS_SAMPLE = "samples/smtp_tls/rfc8460-example.json"
CSP_SAMPLE = "samples/reporting_api/csp-legacy.json"


def read_sample(path, mode="r"):
    with open(path, mode) as f:
        return f.read()


def zip_bytes(name, content):
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w") as _zip:
        _zip.writestr(name, content)
    return buffer.getvalue()


def report_email(attachment=None, maintype="application", subtype="gzip"):
    msg = EmailMessage()
    msg["From"] = "noreply-dmarc-support@example.net"
    msg["To"] = "dmarc@example.com"
    msg["Subject"] = "Report Domain: example.com Submitter: example.net"
    msg.set_content("This is an aggregate report from example.net.")
    if attachment is not None:
        msg.add_attachment(
            attachment,
            maintype=maintype,
            subtype=subtype,
            filename="example.net!example.com!1538204542!1538463818.{0}".format(
                subtype
            ),
        )
    return msg.as_bytes()


class CollectingSink(object):
    def __init__(self):
        self.records = []

    def __call__(self, label, serialized_report):
        self.records.append((label, json.loads(serialized_report)))

    @property
    def labels(self):
        return [label for label, _ in self.records]


class FakeMailboxConnection(MailboxConnection):
    def __init__(self, messages=None, error=None):
        self.messages = messages or []
        self.error = error
        self.logged_out = False
        self.searches = []

    def fetch_messages(self, reports_folder, criteria):
        self.searches.append((reports_folder, list(criteria)))
        if self.error is not None:
            raise self.error
        return list(range(1, len(self.messages) + 1))

    def fetch_raw_messages(self, message_ids):
        return [self.messages[i - 1] for i in message_ids]

    def logout(self):
        self.logged_out = True


class Test(unittest.TestCase):
    def testBase64Decoding(self):
        """Test base64 decoding"""
        # Example from Wikipedia Base64 article
        b64_str = "YW55IGNhcm5hbCBwbGVhcw"
        decoded_str = networkjournal.utils.decode_base64(b64_str)
        assert decoded_str == b"any carnal pleas"

    def testReportingAPISamples(self):
        """Test sample Reporting API reports"""
        print()
        sample_paths = glob("samples/reporting_api/*.json")
        for sample_path in sample_paths:
            if sample_path == CSP_SAMPLE:
                continue
            print("Testing {0}: ".format(sample_path), end="")
            reports = networkjournal.parse_reporting_api_json(read_sample(sample_path))
            self.assertGreater(len(reports), 0)
            for report in reports:
                self.assertIn(report["type"], networkjournal.REPORT_BODY_PARSERS)
            print("Passed!")

    def testCanonicalReencoding(self):
        """Test that parsed reports decode to themselves after encoding"""
        for sample_path in glob("samples/reporting_api/*.json"):
            if sample_path == CSP_SAMPLE:
                continue
            for report in networkjournal.parse_reporting_api_json(
                read_sample(sample_path)
            ):
                encoded = json.loads(json.dumps(report))
                self.assertEqual(
                    networkjournal.parse_reporting_api_report(encoded), report
                )
        csp_report = networkjournal.parse_csp_report_json(read_sample(CSP_SAMPLE))
        self.assertEqual(
            networkjournal.parse_csp_report_json(json.dumps(csp_report)), csp_report
        )
        tls_report = networkjournal.parse_smtp_tls_report_json(
            read_sample(SMTP_TLS_SAMPLE)
        )
        self.assertEqual(
            networkjournal.parse_smtp_tls_report_json(json.dumps(tls_report)),
            tls_report,
        )

    def testCSPAliases(self):
        """Test that CSP2 field names decode to the canonical names"""
        report = networkjournal.parse_csp_report_json(read_sample(CSP_SAMPLE))
        violation = report["csp-report"]
        self.assertEqual(violation["documentURL"], "https://example.com/signup.html")
        self.assertEqual(violation["blockedURL"], "https://example.com/css/style.css")
        self.assertEqual(violation["effectiveDirective"], "style-src")
        self.assertEqual(violation["statusCode"], 200)
        self.assertNotIn("document-uri", violation)

        canonical = json.dumps(
            {
                "csp_report": {
                    "documentURL": "https://example.com/signup.html",
                    "referrer": "",
                    "blockedURL": "https://example.com/css/style.css",
                    "violatedDirective": "style-src cdn.example.com",
                    "effectiveDirective": "style-src",
                    "originalPolicy": violation["originalPolicy"],
                    "disposition": "report",
                    "statusCode": 200,
                }
            }
        )
        self.assertEqual(networkjournal.parse_csp_report_json(canonical), report)

    def testCrashVisibilityAlias(self):
        """Test that page_visibility decodes to visibility_state"""
        legacy = networkjournal.parse_report_body(
            "crash", {"reason": "unresponsive", "page_visibility": "hidden"}
        )
        current = networkjournal.parse_report_body(
            "crash", {"reason": "unresponsive", "visibility_state": "hidden"}
        )
        self.assertEqual(legacy, current)
        self.assertEqual(legacy, {"reason": "unresponsive", "visibility_state": "hidden"})

    def testSourceLocationAliases(self):
        """Test that kebab-case source locations decode to camelCase"""
        body = networkjournal.parse_report_body(
            "deprecation",
            {
                "id": "websql",
                "message": "WebSQL is deprecated",
                "anticipated-removal": "2020-01-01",
                "source-file": "https://example.com/app.js",
                "line-number": 10,
                "column-number": 4,
            },
        )
        self.assertEqual(body["anticipatedRemoval"], "2020-01-01")
        self.assertEqual(body["sourceFile"], "https://example.com/app.js")
        self.assertEqual(body["lineNumber"], 10)
        self.assertEqual(body["columnNumber"], 4)

    def testAbsentOptionalFields(self):
        """Test that optional fields are left out instead of defaulted"""
        body = networkjournal.parse_report_body(
            "intervention", {"id": "audio-no-gesture", "message": "blocked"}
        )
        self.assertEqual(body, {"id": "audio-no-gesture", "message": "blocked"})
        body = networkjournal.parse_report_body(
            "csp-violation",
            {
                "documentURL": "https://example.com/",
                "effectiveDirective": "script-src",
                "originalPolicy": "script-src 'self'",
                "statusCode": None,
            },
        )
        self.assertNotIn("statusCode", body)
        self.assertNotIn("lineNumber", body)

    def testSamplingFraction(self):
        """Test that sampling_fraction keeps its fractional value"""
        reports = networkjournal.parse_reporting_api_json(
            read_sample("samples/reporting_api/nel.json")
        )
        self.assertEqual(reports[0]["body"]["sampling_fraction"], 0.5)
        self.assertEqual(reports[1]["body"]["request_headers"],
                         {"If-None-Match": ["01234abcd"]})
        body = dict(reports[0]["body"], sampling_fraction=50)
        with self.assertRaises(networkjournal.InvalidReport):
            networkjournal.parse_report_body("network-error", body)

    def testStatusCodeRange(self):
        """Test that status codes must fit in 16 bits"""
        reports = json.loads(read_sample("samples/reporting_api/nel.json"))
        body = reports[0]["body"]
        body["status_code"] = 65535
        self.assertEqual(
            networkjournal.parse_report_body("network-error", body)["status_code"],
            65535,
        )
        body["status_code"] = 65536
        with self.assertRaises(networkjournal.InvalidReport):
            networkjournal.parse_report_body("network-error", body)
        csp_report = json.loads(read_sample(CSP_SAMPLE))
        csp_report["csp-report"]["status-code"] = 70000
        with self.assertRaises(networkjournal.InvalidReport):
            networkjournal.parse_csp_report_json(json.dumps(csp_report))

    def testWrongFieldType(self):
        """Test that a field of the wrong type is a parse error"""
        reports = json.loads(read_sample("samples/reporting_api/nel.json"))
        reports[0]["body"]["status_code"] = "200"
        with self.assertRaises(networkjournal.InvalidReport):
            networkjournal.parse_reporting_api_report(reports[0])
        with self.assertRaises(networkjournal.InvalidReport):
            networkjournal.parse_report_body("crash", {"reason": "oom", "is_top_level": 1})

    def testUnknownReportType(self):
        """Test that an unknown type is a parse error"""
        report = json.loads(CRASH_REPORT)
        report["type"] = "tls-cert-validity"
        with self.assertRaises(networkjournal.InvalidReport):
            networkjournal.parse_reporting_api_report(report)

    def testCOOPReports(self):
        """Test the access and navigation shapes of COOP reports"""
        report = networkjournal.parse_reporting_api_json(
            read_sample("samples/reporting_api/coop.json")
        )[0]
        self.assertEqual(report["age"], 6)
        self.assertEqual(report["body"]["property"], "postMessage")
        self.assertEqual(report["body"]["referrer"], "foo.example")

        body = networkjournal.parse_report_body(
            "coop",
            {
                "disposition": "enforce",
                "effectivePolicy": "same-origin-allow-popups",
                "type": "navigation-to-response",
                "previousResponseURL": "https://example.com/",
            },
        )
        self.assertEqual(body["previousResponseURL"], "https://example.com/")
        with self.assertRaises(networkjournal.InvalidReport):
            networkjournal.parse_report_body(
                "coop",
                {
                    "disposition": "enforce",
                    "effectivePolicy": "same-origin",
                    "type": "access-to-opener",
                },
            )

    def testSmtpTlsSample(self):
        """Test sample SMTP TLS report"""
        report = networkjournal.parse_smtp_tls_report_json(
            read_sample(SMTP_TLS_SAMPLE, "rb")
        )
        self.assertEqual(report["organization-name"], "Company-X")
        self.assertEqual(networkjournal.get_policy_domains(report),
                         ["company-y.example"])
        failure_details = report["policies"][0]["failure-details"]
        self.assertEqual(len(failure_details), 3)
        self.assertIn("additional-info-uri", failure_details[1])
        self.assertNotIn("additional-information", failure_details[1])
        with self.assertRaises(networkjournal.InvalidSMTPTLSReport):
            networkjournal.parse_smtp_tls_report_json('{"organization-name": 1}')

    def testDomainFilter(self):
        """Test the domain whitelist"""
        open_filter = DomainFilter()
        self.assertTrue(open_filter.is_domain_allowed("example.com"))
        self.assertTrue(open_filter.is_domain_allowed(""))
        self.assertTrue(open_filter.is_domain_of_url_allowed("https://example.org/"))

        domain_filter = DomainFilter(["example.com", "Mixed.Example"])
        self.assertTrue(domain_filter.is_domain_allowed("example.com"))
        self.assertFalse(domain_filter.is_domain_allowed("www.example.com"))
        self.assertFalse(domain_filter.is_domain_allowed("EXAMPLE.COM"))
        self.assertTrue(domain_filter.is_domain_allowed("Mixed.Example"))
        self.assertFalse(domain_filter.is_domain_allowed("mixed.example"))
        self.assertTrue(
            domain_filter.is_domain_of_url_allowed("https://example.com/a?b=c")
        )
        self.assertFalse(domain_filter.is_domain_of_url_allowed("https://other.com/"))

    def testDomainOfInvalidURL(self):
        """Test that URL checks fail closed"""
        for domain_filter in (DomainFilter(), DomainFilter(["example.com"])):
            self.assertFalse(domain_filter.is_domain_of_url_allowed("not a url"))
            self.assertFalse(domain_filter.is_domain_of_url_allowed("bar.example/foo"))
            self.assertFalse(
                domain_filter.is_domain_of_url_allowed("https://example.com:port/")
            )

    def testAnalyzeURL(self):
        """Test URL derivation"""
        self.assertEqual(
            networkjournal.utils.analyze_url("https://Example.com/a/b?c=d#e"),
            {"host": "example.com", "path": "/a/b", "query": "c=d"},
        )
        self.assertEqual(
            networkjournal.utils.analyze_url("https://example.com"),
            {"host": "example.com", "path": "/"},
        )
        with self.assertRaises(networkjournal.utils.InvalidURL):
            networkjournal.utils.analyze_url("not a url")
        with self.assertRaises(networkjournal.utils.InvalidURL):
            networkjournal.utils.analyze_url("https://example.com:99999/")

    def testUserAgentDatabase(self):
        """Test user agent derivation"""
        database = networkjournal.utils.UserAgentDatabase(
            "samples/user_agents/regexes.yaml"
        )
        self.assertTrue(database.loaded)
        client, os_, device = networkjournal.utils.analyze_user_agent(
            CHROME_USER_AGENT, database
        )
        self.assertEqual(client["family"], "Chrome")
        self.assertEqual(client["major"], "87")
        self.assertEqual(os_["family"], "Linux")
        self.assertEqual(device["family"], "Other")

        missing = networkjournal.utils.UserAgentDatabase("samples/missing.yaml")
        self.assertFalse(missing.loaded)
        self.assertEqual(
            networkjournal.utils.analyze_user_agent(CHROME_USER_AGENT, missing),
            ({"family": ""}, {"family": ""}, {"family": ""}),
        )

    def testUnmatchedUserAgent(self):
        """Test user agents the ruleset does not match"""
        database = networkjournal.utils.UserAgentDatabase(
            "samples/user_agents/regexes.yaml"
        )
        self.assertEqual(
            networkjournal.utils.analyze_user_agent("UA-X", database),
            ({"family": "Other"}, {"family": "Other"}, {"family": "Other"}),
        )
        client, os_, device = networkjournal.utils.analyze_user_agent(
            "Mozilla/5.0 (Windows NT 10.0; rv:109.0) Firefox/115.0", database
        )
        self.assertEqual(client, {"family": "Firefox", "major": "115", "minor": "0"})
        self.assertEqual(os_["family"], "Windows")
        self.assertEqual(device, {"family": "Other"})
        client, os_, device = networkjournal.utils.analyze_user_agent(
            "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36", database
        )
        self.assertEqual(client, {"family": "Other"})
        self.assertEqual(device["family"], "Pixel 8")

        sink = CollectingSink()
        status = networkjournal.handle_http_report(
            networkjournal.REPORTS_JSON,
            CRASH_REPORT,
            DomainFilter(),
            user_agent=CHROME_USER_AGENT,
            sink=sink,
            ua_database=database,
        )
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(sink.labels, ["Crash"])
        self.assertEqual(sink.records[0][1]["derived"]["client"], {"family": "Other"})

        client = create_app(ua_database=database, sink=sink).test_client()
        response = client.post(
            "/crash",
            data=CRASH_REPORT,
            content_type=networkjournal.REPORTS_JSON,
            headers={"User-Agent": CHROME_USER_AGENT},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(sink.labels, ["Crash", "Crash"])

    def testDMARCSample(self):
        """Test sample aggregate DMARC report"""
        report = networkjournal.parse_dmarc_report_xml(read_sample(DMARC_SAMPLE))
        self.assertEqual(networkjournal.get_published_policy_domain(report),
                         "example.com")
        self.assertEqual(networkjournal.get_sender_organization(report),
                         "example.net")
        self.assertEqual(report["version"], 1.0)
        self.assertEqual(report["policy_published"]["p"], "reject")
        self.assertEqual(report["policy_published"]["adkim"], "r")
        self.assertEqual(report["policy_published"]["pct"], 100)
        self.assertEqual(report["report_metadata"]["date_range"],
                         {"begin": 1538204542, "end": 1538463818})
        records = report["records"]
        self.assertEqual(len(records), 2)
        self.assertEqual(records[0]["row"]["count"], 2)
        self.assertEqual(records[0]["row"]["policy_evaluated"]["reason"],
                         [{"type": "forwarded"}])
        self.assertEqual(records[0]["auth_results"]["spf"][0]["result"], "softfail")
        self.assertNotIn("dkim", records[1]["auth_results"])
        self.assertEqual(records[1]["identifiers"]["envelope_from"], "example.com")

    def testDMARCInvalidVocabulary(self):
        """Test that unknown DMARC tokens are decode errors"""
        with self.assertRaises(networkjournal.InvalidDMARCReport):
            networkjournal.parse_dmarc_report_xml(
                read_sample("samples/aggregate/invalid-disposition.xml")
            )

    def testDMARCWithoutRecords(self):
        """Test a DMARC report without records"""
        xml = read_sample("samples/aggregate/invalid-disposition.xml")
        report = networkjournal.parse_dmarc_report_xml(
            xml.replace("<p>bounce</p>", "<p>none</p>")
        )
        self.assertEqual(report["records"], [])

    def testEmptySample(self):
        """Test empty/unparasable report"""
        with self.assertRaises(networkjournal.ParserError):
            networkjournal.parse_dmarc_report_xml("")
        with self.assertRaises(networkjournal.ParserError):
            networkjournal.parse_dmarc_report_xml("<feedback><version>")

    def testExtractReportArchives(self):
        """Test that zip and gzip attachments give the same report"""
        xml = read_sample(DMARC_SAMPLE, "rb")
        from_xml = networkjournal.extract_report(xml, "text/xml")
        from_gzip = networkjournal.extract_report(gzip.compress(xml),
                                                  "application/gzip")
        from_zip = networkjournal.extract_report(
            zip_bytes("report.xml", xml), "application/zip"
        )
        self.assertEqual(from_xml, from_gzip)
        self.assertEqual(from_xml, from_zip)
        self.assertEqual(
            networkjournal.parse_dmarc_report_xml(from_gzip),
            networkjournal.parse_dmarc_report_xml(from_zip),
        )

    def testExtractReportUnexpectedType(self):
        """Test that unrelated attachments are not reports"""
        self.assertIsNone(networkjournal.extract_report(b"%PDF-1.4", "application/pdf"))

    def testExtractReportCorrupt(self):
        """Test corrupt archives and encodings"""
        with self.assertRaises(networkjournal.InvalidDMARCReport):
            networkjournal.extract_report(b"not gzip", "application/gzip")
        with self.assertRaises(networkjournal.InvalidDMARCReport):
            networkjournal.extract_report(b"not zip", "application/zip")
        with self.assertRaises(networkjournal.InvalidDMARCReport):
            networkjournal.extract_report(b"\xff\xfe<feedback/>", "text/xml")

    def testDMARCEmail(self):
        """Test DMARC report e-mails"""
        xml = read_sample(DMARC_SAMPLE, "rb")
        expected = networkjournal.parse_dmarc_report_xml(xml)
        gzip_email = report_email(gzip.compress(xml))
        self.assertEqual(networkjournal.parse_dmarc_report_email(gzip_email), expected)
        zip_email = report_email(zip_bytes("report.xml", xml), subtype="zip")
        self.assertEqual(networkjournal.parse_dmarc_report_email(zip_email), expected)
        self.assertIsNone(networkjournal.parse_dmarc_report_email(report_email()))
        pdf_email = report_email(b"%PDF-1.4", subtype="pdf")
        self.assertIsNone(networkjournal.parse_dmarc_report_email(pdf_email))

    def testCrashScenario(self):
        """Test that a crash report is emitted with an empty whitelist"""
        sink = CollectingSink()
        status = networkjournal.handle_http_report(
            networkjournal.REPORTS_JSON,
            CRASH_REPORT,
            DomainFilter(),
            user_agent="UA-X",
            sink=sink,
        )
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(sink.labels, ["Crash"])
        record = sink.records[0][1]
        self.assertEqual(record["report"]["body"], {"reason": "oom"})
        self.assertNotIn("stack", record["report"]["body"])
        self.assertEqual(record["report"]["age"], 42)
        self.assertEqual(record["derived"]["url"], {"host": "example.com", "path": "/"})
        self.assertEqual(record["derived"]["client"], {"family": ""})

    def testCrashScenarioFiltered(self):
        """Test that a report for another domain is filtered"""
        sink = CollectingSink()
        status = networkjournal.handle_http_report(
            networkjournal.REPORTS_JSON,
            CRASH_REPORT,
            DomainFilter(["other.com"]),
            sink=sink,
        )
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(sink.records, [])

    def testSmtpTlsScenario(self):
        """Test that an SMTP TLS report for a whitelisted domain is emitted"""
        sink = CollectingSink()
        status = networkjournal.handle_http_report(
            networkjournal.TLSRPT_JSON,
            read_sample(SMTP_TLS_SAMPLE, "rb"),
            DomainFilter(["company-y.example"]),
            sink=sink,
        )
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(sink.labels, ["SMTP-TLS-RPT"])
        self.assertEqual(sink.records[0][1]["derived"]["url"]["host"],
                         "company-y.example")

    def testMalformedJSON(self):
        """Test that a malformed body is rejected"""
        sink = CollectingSink()
        status = networkjournal.handle_http_report(
            networkjournal.REPORTS_JSON,
            b'{"type": "crash", ',
            DomainFilter(),
            sink=sink,
        )
        self.assertEqual(status, HTTPStatus.BAD_REQUEST)
        self.assertEqual(sink.records, [])

        for content_type in (
            networkjournal.REPORTS_JSON,
            networkjournal.CSP_REPORT,
            networkjournal.TLSRPT_JSON,
        ):
            status = networkjournal.handle_http_report(
                content_type, b"[" * 100000, DomainFilter(), sink=sink
            )
            self.assertEqual(status, HTTPStatus.BAD_REQUEST)
        self.assertEqual(sink.records, [])

        client = create_app(sink=sink).test_client()
        response = client.post(
            "/reporting-api",
            data=b"[" * 100000,
            content_type=networkjournal.REPORTS_JSON,
        )
        self.assertEqual(response.status_code, 400)

    def testRejectedPayloadLogging(self):
        """Test that rejected payloads are logged truncated at debug level"""
        payload = '{"type": "crash", "url": "' + "x" * 5000
        with self.assertLogs("networkjournal.log", level="DEBUG") as logs:
            networkjournal.handle_http_report(
                networkjournal.REPORTS_JSON, payload, DomainFilter()
            )
        errors = [r for r in logs.records if r.levelname == "ERROR"]
        self.assertEqual(len(errors), 1)
        self.assertNotIn("x" * 100, errors[0].getMessage())
        debug = [r.getMessage() for r in logs.records if r.levelname == "DEBUG"]
        self.assertTrue(any(m.startswith("Rejected payload") for m in debug))
        for message in debug:
            self.assertLess(len(message), 300)

    def testBatchFailsFast(self):
        """Test that processing stops at the first invalid report"""
        crash = json.loads(CRASH_REPORT)
        batch = json.dumps(
            [crash, {"type": "crash", "url": "https://example.com/"}, crash]
        )
        sink = CollectingSink()
        status = networkjournal.handle_http_report(
            networkjournal.REPORTS_JSON, batch, DomainFilter(), sink=sink
        )
        self.assertEqual(status, HTTPStatus.BAD_REQUEST)
        self.assertEqual(sink.labels, ["Crash"])

    def testContentTypes(self):
        """Test content type selection"""
        sink = CollectingSink()
        status = networkjournal.handle_http_report(
            "Application/Reports+JSON; charset=utf-8",
            CRASH_REPORT,
            DomainFilter(),
            sink=sink,
        )
        self.assertEqual(status, HTTPStatus.OK)
        for content_type in ("text/plain", None, ""):
            status = networkjournal.handle_http_report(
                content_type, CRASH_REPORT, DomainFilter(), sink=sink
            )
            self.assertEqual(status, HTTPStatus.BAD_REQUEST)
        status = networkjournal.handle_http_report(
            networkjournal.CSP_REPORT,
            read_sample(CSP_SAMPLE),
            DomainFilter(),
            accepted_content_types=(networkjournal.REPORTS_JSON,),
            sink=sink,
        )
        self.assertEqual(status, HTTPStatus.BAD_REQUEST)
        self.assertEqual(sink.labels, ["Crash"])
        report_type, reports = networkjournal.parse_payload(
            networkjournal.CSP_REPORT, read_sample(CSP_SAMPLE)
        )
        self.assertEqual(report_type, "csp")
        self.assertEqual(len(reports), 1)

    def testReportLabels(self):
        """Test the labels of emitted reports"""
        sink = CollectingSink()
        domain_filter = DomainFilter(["example.com", "www.example.com"])
        for sample in ("nel.json", "intervention.json", "csp-legacy.json"):
            content_type = networkjournal.REPORTS_JSON
            if sample == "csp-legacy.json":
                content_type = networkjournal.CSP_REPORT
            networkjournal.handle_http_report(
                content_type,
                read_sample("samples/reporting_api/{0}".format(sample)),
                domain_filter,
                sink=sink,
            )
        self.assertEqual(sink.labels, ["NEL", "NEL", "Intervention", "CSP"])
        csp_record = sink.records[3][1]
        self.assertEqual(csp_record["derived"]["url"]["path"], "/signup.html")

    def testBatchLabels(self):
        """Test that a batch is emitted in order"""
        sink = CollectingSink()
        status = networkjournal.handle_http_report(
            networkjournal.REPORTS_JSON,
            read_sample("samples/reporting_api/batch.json", "rb"),
            DomainFilter(["example.com"]),
            sink=sink,
        )
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(
            sink.labels,
            [
                "CSP",
                "CSP-Hash",
                "Deprecation",
                "IntegrityViolation",
                "PermissionsPolicyViolation",
                "Crash",
            ],
        )
        self.assertEqual(sink.records[0][1]["derived"]["url"]["path"],
                         "/vulnerable-page/")

    def testRelativeReportURL(self):
        """Test that reports with a relative URL are not emitted"""
        sink = CollectingSink()
        status = networkjournal.handle_http_report(
            networkjournal.REPORTS_JSON,
            read_sample("samples/reporting_api/coep.json"),
            DomainFilter(),
            sink=sink,
        )
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(sink.records, [])

    def testReportUserAgent(self):
        """Test that the report's user agent is preferred"""
        database = networkjournal.utils.UserAgentDatabase(
            "samples/user_agents/regexes.yaml"
        )
        sink = CollectingSink()
        report = networkjournal.parse_reporting_api_json(
            read_sample("samples/reporting_api/intervention.json")
        )[0]
        emitted = networkjournal.handle_report(
            report,
            "reporting_api",
            DomainFilter(),
            user_agent="Mozilla/5.0 (Windows NT 10.0; rv:109.0) Firefox/115.0",
            sink=sink,
            ua_database=database,
        )
        self.assertTrue(emitted)
        derived = sink.records[0][1]["derived"]
        self.assertEqual(derived["client"]["family"], "Chrome")
        self.assertEqual(derived["os"]["family"], "Linux")

    def testDMARCDispatch(self):
        """Test the derived fields of a DMARC report"""
        report = networkjournal.parse_dmarc_report_xml(read_sample(DMARC_SAMPLE))
        sink = CollectingSink()
        self.assertTrue(
            networkjournal.handle_report(report, "dmarc", DomainFilter(), sink=sink)
        )
        self.assertFalse(
            networkjournal.handle_report(
                report, "dmarc", DomainFilter(["example.org"]), sink=sink
            )
        )
        self.assertEqual(sink.labels, ["DMARC"])
        derived = sink.records[0][1]["derived"]
        self.assertEqual(derived["client"], {"family": "example.net"})
        self.assertEqual(derived["url"], {"host": "example.com", "path": ""})

    def testSerializationError(self):
        """Test that an unserializable report is an error"""
        report = {
            "type": "crash",
            "url": "https://example.com/",
            "body": {"reason": float("nan")},
        }
        with self.assertRaises(networkjournal.ReportSerializationError):
            networkjournal.handle_report(
                report, "reporting_api", DomainFilter(), sink=CollectingSink()
            )

    def testLogReport(self):
        """Test the default sink"""
        with self.assertLogs("networkjournal.log", level="INFO") as logs:
            networkjournal.handle_report(
                json.loads(CRASH_REPORT), "reporting_api", DomainFilter()
            )
        self.assertEqual(len(logs.records), 1)
        self.assertTrue(logs.records[0].getMessage().startswith("Crash {"))

    def testWebApp(self):
        """Test the report endpoints"""
        sink = CollectingSink()
        app = create_app(DomainFilter(["example.com", "company-y.example"]), sink=sink)
        client = app.test_client()

        response = client.post(
            "/reporting-api",
            data=CRASH_REPORT,
            content_type=networkjournal.REPORTS_JSON,
            headers={"User-Agent": CHROME_USER_AGENT},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Server"], "network-journal/{0}".format(
            networkjournal.__version__))

        response = client.post(
            "/tlsrpt",
            data=gzip.compress(read_sample(SMTP_TLS_SAMPLE, "rb")),
            content_type=networkjournal.TLSRPT_GZIP,
        )
        self.assertEqual(response.status_code, 200)

        response = client.post(
            "/tlsrpt", data=b"not gzip", content_type=networkjournal.TLSRPT_GZIP
        )
        self.assertEqual(response.status_code, 400)

        response = client.post(
            "/crash", data=CRASH_REPORT, content_type="text/plain"
        )
        self.assertEqual(response.status_code, 400)

        response = client.post(
            "/csp", data=read_sample(CSP_SAMPLE), content_type=networkjournal.CSP_REPORT
        )
        self.assertEqual(response.status_code, 200)

        response = client.post(
            "/nel", data="[", content_type=networkjournal.REPORTS_JSON
        )
        self.assertEqual(response.status_code, 400)

        self.assertEqual(sink.labels, ["Crash", "SMTP-TLS-RPT", "CSP"])

    def testWebAppFiltered(self):
        """Test that filtered reports are accepted and not emitted"""
        sink = CollectingSink()
        client = create_app(DomainFilter(["other.com"]), sink=sink).test_client()
        response = client.post(
            "/crash", data=CRASH_REPORT, content_type=networkjournal.REPORTS_JSON
        )
        self.assertEqual(response.status_code, 200)
        response = client.post(
            "/tlsrpt",
            data=read_sample(SMTP_TLS_SAMPLE, "rb"),
            content_type=networkjournal.TLSRPT_JSON,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")
        self.assertEqual(sink.records, [])

    def testCheckMailbox(self):
        """Test a mailbox check"""
        xml = read_sample(DMARC_SAMPLE, "rb")
        connection = FakeMailboxConnection(
            [
                report_email(gzip.compress(xml)),
                report_email(b"not gzip"),
                report_email(b"%PDF-1.4", subtype="pdf"),
                report_email(zip_bytes("report.xml", xml), subtype="zip"),
            ]
        )
        sink = CollectingSink()
        emitted = networkjournal.check_mailbox(
            lambda: connection, DomainFilter(), reports_folder="DMARC", sink=sink
        )
        self.assertEqual(emitted, 2)
        self.assertEqual(sink.labels, ["DMARC", "DMARC"])
        self.assertTrue(connection.logged_out)
        self.assertEqual(connection.searches[0][0], "DMARC")
        self.assertIn("Report Domain:", connection.searches[0][1])

    def testCheckMailboxErrors(self):
        """Test that mailbox errors are logged and not raised"""

        def refuse():
            raise ConnectionRefusedError("connection refused")

        self.assertEqual(networkjournal.check_mailbox(refuse, DomainFilter()), 0)

        connection = FakeMailboxConnection(error=OSError("folder does not exist"))
        self.assertEqual(
            networkjournal.check_mailbox(lambda: connection, DomainFilter()), 0
        )
        self.assertTrue(connection.logged_out)

    def testWatchInboxStops(self):
        """Test that setting the stop event ends the watch"""
        stop_event = threading.Event()
        connections = []

        def connect():
            connection = FakeMailboxConnection()
            connections.append(connection)
            stop_event.set()
            return connection

        watcher = threading.Thread(
            target=networkjournal.watch_inbox,
            args=(connect, DomainFilter()),
            kwargs=dict(check_timeout=3600, stop_event=stop_event),
        )
        watcher.start()
        watcher.join(10)
        self.assertFalse(watcher.is_alive())
        self.assertEqual(len(connections), 1)
        self.assertTrue(connections[0].logged_out)
        self.assertEqual(connections[0].searches, [])

    def testConfigFile(self):
        """Test loading an INI configuration file"""
        config = """
[general]
debug = True
user_agent_database = samples/user_agents/regexes.yaml

[server]
listen = 0.0.0.0
port = 8443

[filter]
domain_whitelist = example.com, company-y.example,

[mailbox]
reports_folder = DMARC
check_timeout = 60

[imap]
host = imap.example.com
user = dmarc@example.com
password = secret
"""
        opts = Namespace(
            debug=False,
            domain_whitelist=[],
            imap_port=993,
        )
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "network-journal.ini")
            with open(path, "w") as f:
                f.write(config)
            networkjournal.cli._load_config(opts, path)
        self.assertTrue(opts.debug)
        self.assertEqual(opts.listen, "0.0.0.0")
        self.assertEqual(opts.port, 8443)
        self.assertEqual(opts.domain_whitelist, ["example.com", "company-y.example"])
        self.assertEqual(opts.mailbox_reports_folder, "DMARC")
        self.assertEqual(opts.mailbox_check_timeout, 60)
        self.assertEqual(opts.imap_host, "imap.example.com")
        self.assertEqual(opts.imap_port, 993)
        self.assertEqual(opts.user_agent_database, "samples/user_agents/regexes.yaml")


if __name__ == "__main__":
    unittest.main(verbosity=2)
