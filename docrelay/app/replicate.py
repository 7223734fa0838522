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

"""Command line entry point: run one replication described by a config file.

    docrelay-replicate -c replicator.yaml [--continuous] [--since SEQ]

The run summary is printed to stdout as JSON. Interrupting a continuous
replication closes its change feed: what was replicated so far is still
checkpointed and summarised.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional, Tuple

from twisted.internet import defer, task

from docrelay.api.errors import (
    CodeMessageException,
    ReplicationError,
    RequestSendFailed,
)
from docrelay.config._base import ConfigError, format_config_error
from docrelay.config.logger import DEFAULT_LOG_CONFIG, LoggingConfig, setup_logging
from docrelay.config.peers import PeerConfig
from docrelay.config.replicator import ReplicatorConfig
from docrelay.http.client import SimpleHttpClient
from docrelay.peer.couchdb import CouchDBPeer
from docrelay.replication.replicator import Replicator
from docrelay.types import JsonDict, ReplicationTask, SequenceToken
from docrelay.util import Clock

logger = logging.getLogger("docrelay.app.replicate")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docrelay-replicate",
        description="Replicate a CouchDB database to another one.",
    )
    parser.add_argument(
        "-c",
        "--config-path",
        dest="config_path",
        action="append",
        metavar="CONFIG_FILE",
        help="Specify config file. Can be given multiple times; later files override"
        " earlier ones.",
    )
    parser.add_argument(
        "--continuous",
        action="store_true",
        help="Follow the source's change feed until interrupted",
    )
    parser.add_argument(
        "--since",
        default=None,
        metavar="SEQ",
        help="Read the change feed from SEQ when there is no usable checkpoint",
    )
    parser.add_argument(
        "--generate-log-config",
        metavar="LOG_FILE",
        default=None,
        help="Print a log config file which logs to LOG_FILE, and exit",
    )
    LoggingConfig.add_arguments(parser)
    return parser


def parse_since(value: str) -> SequenceToken:
    """Sequences are integers on CouchDB 1.x, opaque strings later on."""
    try:
        return int(value)
    except ValueError:
        return value


def load_config(argv: List[str]) -> Tuple[ReplicatorConfig, argparse.Namespace]:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.generate_log_config:
        print(DEFAULT_LOG_CONFIG.substitute(log_file=args.generate_log_config))
        sys.exit(0)

    if not args.config_path:
        parser.error("Must supply a config file.")

    config = ReplicatorConfig.load_config(args.config_path)
    config.logging.read_arguments(args)
    return config, args


def build_task(config: ReplicatorConfig, args: argparse.Namespace) -> ReplicationTask:
    replication_task = config.replication.new_task()
    if args.continuous:
        replication_task.continuous = True
    if args.since is not None:
        replication_task.since_seq = parse_since(args.since)
    return replication_task


def _peer(http_client: SimpleHttpClient, peer_config: PeerConfig) -> CouchDBPeer:
    return CouchDBPeer(
        http_client,
        peer_config.url,
        peer_config.database,
        username=peer_config.username,
        password=peer_config.password,
    )


def build_replicator(
    reactor, config: ReplicatorConfig, replication_task: ReplicationTask
) -> Replicator:
    # one connection pool for both peers: they are often the same server
    http_client = SimpleHttpClient(reactor)
    return Replicator(
        source=_peer(http_client, config.peers.source),
        target=_peer(http_client, config.peers.target),
        task=replication_task,
        clock=Clock(reactor),
    )


def format_summary(summary: JsonDict) -> str:
    # the error buckets hold exceptions
    return json.dumps(summary, default=str, indent=4, sort_keys=True)


async def replicate(reactor, replicator: Replicator) -> None:
    done: "defer.Deferred[None]" = defer.Deferred()

    def _on_shutdown() -> Optional["defer.Deferred[None]"]:
        # let a continuous run write its checkpoint before the reactor stops
        if replicator.cancel_replication():
            return done
        return None

    reactor.addSystemEventTrigger("before", "shutdown", _on_shutdown)

    try:
        summary = await replicator.start_replication()
    except (ReplicationError, CodeMessageException, RequestSendFailed) as e:
        logger.error("Replication failed: %s", e)
        raise SystemExit(1)
    finally:
        if not done.called:
            done.callback(None)

    print(format_summary(summary))


def main(argv: Optional[List[str]] = None) -> None:
    if argv is None:
        argv = sys.argv[1:]

    try:
        config, args = load_config(argv)
        replication_task = build_task(config, args)
    except ConfigError as e:
        sys.stderr.write("\n" + "".join(format_config_error(e)) + "\n")
        sys.exit(1)

    setup_logging(config)

    # We use task.react as it stops the reactor, and sets the exit code, once
    # the replication finishes.
    task.react(
        lambda reactor: defer.ensureDeferred(
            replicate(reactor, build_replicator(reactor, config, replication_task))
        )
    )


if __name__ == "__main__":
    main()
