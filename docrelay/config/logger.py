# Copyright 2026 The docrelay Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
import argparse
import logging
import logging.config
import sys
import threading
from string import Template
from typing import TYPE_CHECKING, Any, Optional

import yaml
from zope.interface import implementer

from twisted.logger import (
    ILogObserver,
    LogBeginner,
    STDLibLogObserver,
    eventAsText,
    globalLogBeginner,
)

from docrelay import __version__
from docrelay.config._base import Config, ConfigError
from docrelay.types import JsonDict

if TYPE_CHECKING:
    from docrelay.config.replicator import ReplicatorConfig

DEFAULT_LOG_CONFIG = Template(
    """\
# Log configuration for docrelay.
#
# This is a YAML file containing a standard Python logging configuration
# dictionary. See [1] for details on the valid settings.
#
# [1]: https://docs.python.org/3/library/logging.config.html#configuration-dictionary-schema

version: 1

formatters:
    precise:
        format: '%(asctime)s - %(name)s - %(lineno)d - %(levelname)s - %(message)s'

handlers:
    file:
        class: logging.handlers.TimedRotatingFileHandler
        formatter: precise
        filename: ${log_file}
        when: midnight
        backupCount: 3  # Does not include the current log file.
        encoding: utf8

    console:
        class: logging.StreamHandler
        formatter: precise

loggers:
    docrelay.http.client:
        # DEBUG logs every request to the peers.
        level: INFO

root:
    level: INFO
    handlers: [file]

disable_existing_loggers: false
"""
)

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(lineno)d - %(levelname)s - %(message)s"


class LoggingConfig(Config):
    section = "logging"

    def read_config(self, config: JsonDict, **kwargs: Any) -> None:
        self.log_config = self.abspath(config.get("log_config"))
        if self.log_config:
            self.check_file(self.log_config, "log_config")
        self.verbose = False

    def read_arguments(self, args: argparse.Namespace) -> None:
        if args.log_config is not None:
            self.log_config = self.check_file(args.log_config, "--log-config")
        self.verbose = bool(args.verbose)

    @staticmethod
    def add_arguments(parser: argparse.ArgumentParser) -> None:
        logging_group = parser.add_argument_group("logging")
        logging_group.add_argument(
            "--log-config",
            dest="log_config",
            default=None,
            help="A YAML python logging config, overriding 'log_config'",
        )
        logging_group.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Log at DEBUG when no log config file is given",
        )


def _setup_stdlib_logging(
    log_config_path: Optional[str], verbose: bool, logBeginner: LogBeginner
) -> None:
    """
    Set up Python standard library logging.
    """
    if log_config_path is None:
        logger = logging.getLogger("")
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)

        formatter = logging.Formatter(DEFAULT_LOG_FORMAT)

        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    else:
        # Load the logging configuration.
        _load_logging_config(log_config_path)

    # Route Twisted's native logging through to the standard library logging
    # system.
    observer = STDLibLogObserver()

    threadlocal = threading.local()

    @implementer(ILogObserver)
    def _log(event: dict) -> None:
        if "log_text" in event:
            if event["log_text"].startswith("Starting factory "):
                return

            if event["log_text"].startswith("Stopping factory "):
                return

        # make sure we don't get stack overflows when the logging system raises
        # an error which is written to stderr which is redirected to the logging
        # system, etc.
        if getattr(threadlocal, "active", False):
            # write the text of the event, if any, to the *real* stderr (which may
            # be redirected to /dev/null, but there's not much we can do)
            try:
                event_text = eventAsText(event)
                print("logging during logging: %s" % event_text, file=sys.__stderr__)
            except Exception:
                # gah.
                pass
            return

        try:
            threadlocal.active = True
            return observer(event)
        finally:
            threadlocal.active = False

    logBeginner.beginLoggingTo([_log], redirectStandardIO=False)


def _load_logging_config(log_config_path: str) -> None:
    """
    Configure logging from a log config path.
    """
    with open(log_config_path, "rb") as f:
        log_config = yaml.safe_load(f.read())

    if not log_config:
        logging.warning("Loaded a blank logging config?")
        return

    if not isinstance(log_config, dict):
        raise ConfigError("Log config %r is not a mapping" % (log_config_path,))

    logging.config.dictConfig(log_config)


def setup_logging(
    config: "ReplicatorConfig",
    logBeginner: LogBeginner = globalLogBeginner,
) -> None:
    """
    Set up the logging subsystem.

    Args:
        config: configuration data

        logBeginner: The Twisted logBeginner to use.

    """
    from twisted.internet import reactor

    _setup_stdlib_logging(
        config.logging.log_config, config.logging.verbose, logBeginner=logBeginner
    )

    # Log immediately so we can grep backwards.
    logging.info("***** STARTING REPLICATOR *****")
    logging.info("Replicator %s version %s", sys.argv[0], __version__)
    logging.info("Twisted reactor: %s", type(reactor).__name__)
