#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A CLI for collecting browser and mail server reports"""

import logging
import os
import threading
from argparse import ArgumentParser, Namespace
from configparser import ConfigParser

from networkjournal import watch_inbox
from networkjournal.constants import (
    DEFAULT_CHECK_TIMEOUT,
    DEFAULT_USER_AGENT_DATABASE_PATH,
    __version__,
)
from networkjournal.filter import DomainFilter
from networkjournal.log import logger
from networkjournal.mail import IMAPConnection
from networkjournal.utils import UserAgentDatabase
from networkjournal.web import create_app

formatter = logging.Formatter(
    fmt="%(levelname)8s:%(filename)s:%(lineno)d:%(message)s",
    datefmt="%Y-%m-%d:%H:%M:%S",
)
handler = logging.StreamHandler()
handler.setFormatter(formatter)
logger.addHandler(handler)


def _str_to_list(s):
    """Converts a comma separated string to a list"""
    _list = s.split(",")
    return list(filter(None, map(lambda i: i.strip(), _list)))


def _load_config(opts, config_file):
    """Updates the options with the settings of an INI file"""
    config = ConfigParser()
    config.read(config_file)
    if "general" in config.sections():
        general_config = config["general"]
        if "debug" in general_config:
            opts.debug = general_config.getboolean("debug")
        if "verbose" in general_config:
            opts.verbose = general_config.getboolean("verbose")
        if "warnings" in general_config:
            opts.warnings = general_config.getboolean("warnings")
        if "log_file" in general_config:
            opts.log_file = general_config["log_file"]
        if "user_agent_database" in general_config:
            opts.user_agent_database = general_config["user_agent_database"]

    if "server" in config.sections():
        server_config = config["server"]
        if "listen" in server_config:
            opts.listen = server_config["listen"]
        if "port" in server_config:
            opts.port = server_config.getint("port")
        if "tls" in server_config:
            opts.tls = server_config.getboolean("tls")
        if "tls_cert" in server_config:
            opts.tls_cert = server_config["tls_cert"]
        if "tls_key" in server_config:
            opts.tls_key = server_config["tls_key"]

    if "filter" in config.sections():
        filter_config = config["filter"]
        if "domain_whitelist" in filter_config:
            opts.domain_whitelist = _str_to_list(filter_config["domain_whitelist"])

    if "mailbox" in config.sections():
        mailbox_config = config["mailbox"]
        if "reports_folder" in mailbox_config:
            opts.mailbox_reports_folder = mailbox_config["reports_folder"]
        if "check_timeout" in mailbox_config:
            opts.mailbox_check_timeout = mailbox_config.getint("check_timeout")

    if "imap" in config.sections():
        imap_config = config["imap"]
        if "host" in imap_config:
            opts.imap_host = imap_config["host"]
        else:
            logger.error("host setting missing from the imap config section")
            exit(-1)
        if "port" in imap_config:
            opts.imap_port = imap_config.getint("port")
        if "timeout" in imap_config:
            opts.imap_timeout = imap_config.getfloat("timeout")
        if "max_retries" in imap_config:
            opts.imap_max_retries = imap_config.getint("max_retries")
        if "ssl" in imap_config:
            opts.imap_ssl = imap_config.getboolean("ssl")
        if "skip_certificate_verification" in imap_config:
            imap_verify = imap_config.getboolean("skip_certificate_verification")
            opts.imap_skip_certificate_verification = imap_verify
        if "user" in imap_config:
            opts.imap_user = imap_config["user"]
        else:
            logger.critical("user setting missing from the imap config section")
            exit(-1)
        if "password" in imap_config:
            opts.imap_password = imap_config["password"]
        else:
            logger.critical("password setting missing from the imap config section")
            exit(-1)

    return opts


def _main():
    """Called when the module is executed"""
    arg_parser = ArgumentParser(
        description="Collects browser and mail server reports and writes "
        "them to a journal"
    )
    arg_parser.add_argument(
        "-c", "--config-file", help="a path to a configuration file (.ini)"
    )
    arg_parser.add_argument(
        "-w",
        "--warnings",
        action="store_true",
        help="print warnings in addition to errors",
    )
    arg_parser.add_argument(
        "--verbose", action="store_true", help="print the collected reports"
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="print debugging information"
    )
    arg_parser.add_argument("--log-file", default=None, help="output logging to a file")
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)

    args = arg_parser.parse_args()

    opts = Namespace(
        config_file=args.config_file,
        warnings=args.warnings,
        verbose=args.verbose,
        debug=args.debug,
        log_file=args.log_file,
        user_agent_database=DEFAULT_USER_AGENT_DATABASE_PATH,
        listen="127.0.0.1",
        port=8080,
        tls=False,
        tls_cert=None,
        tls_key=None,
        domain_whitelist=[],
        mailbox_reports_folder="INBOX",
        mailbox_check_timeout=DEFAULT_CHECK_TIMEOUT,
        imap_host=None,
        imap_port=993,
        imap_user=None,
        imap_password=None,
        imap_ssl=True,
        imap_skip_certificate_verification=False,
        imap_timeout=30,
        imap_max_retries=4,
    )

    if args.config_file:
        abs_path = os.path.abspath(args.config_file)
        if not os.path.exists(abs_path):
            logger.error("A file does not exist at {0}".format(abs_path))
            exit(-1)
        # the reports are written at the INFO level
        opts.verbose = True
        _load_config(opts, args.config_file)
        if args.debug:
            opts.debug = True

    logger.setLevel(logging.ERROR)

    if opts.warnings:
        logger.setLevel(logging.WARNING)
    if opts.verbose:
        logger.setLevel(logging.INFO)
    if opts.debug:
        logger.setLevel(logging.DEBUG)
    if opts.log_file:
        try:
            fh = logging.FileHandler(opts.log_file, "a")
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
            fh.setFormatter(formatter)
            logger.addHandler(fh)
        except Exception as error:
            logger.warning("Unable to write to log file: {}".format(error))

    logger.info("Starting network-journal")

    ua_database = UserAgentDatabase(opts.user_agent_database)
    domain_filter = DomainFilter(opts.domain_whitelist)
    stop_event = threading.Event()

    if opts.imap_host:

        def connect():
            return IMAPConnection(
                host=opts.imap_host,
                user=opts.imap_user,
                password=opts.imap_password,
                port=opts.imap_port,
                ssl=opts.imap_ssl,
                verify=not opts.imap_skip_certificate_verification,
                timeout=opts.imap_timeout,
                max_retries=opts.imap_max_retries,
            )

        logger.info("Watching for email in {0}".format(opts.imap_host))
        watcher = threading.Thread(
            target=watch_inbox,
            args=(connect, domain_filter),
            kwargs=dict(
                reports_folder=opts.mailbox_reports_folder,
                check_timeout=opts.mailbox_check_timeout,
                stop_event=stop_event,
                ua_database=ua_database,
            ),
            name="mailbox-poller",
            daemon=True,
        )
        watcher.start()

    ssl_context = None
    if opts.tls:
        if opts.tls_cert and opts.tls_key:
            ssl_context = (opts.tls_cert, opts.tls_key)
        else:
            logger.warning("tls is enabled, but tls_cert or tls_key is missing")

    app = create_app(domain_filter, ua_database=ua_database)
    logger.info(
        "Listening on {0}:{1} - Quit with ctrl-c".format(opts.listen, opts.port)
    )
    try:
        app.run(
            host=opts.listen,
            port=opts.port,
            ssl_context=ssl_context,
            threaded=True,
        )
    finally:
        stop_event.set()


if __name__ == "__main__":
    _main()
