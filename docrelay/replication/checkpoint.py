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

"""Replication logs: the checkpoint documents kept on both peers.

A replication log lives at `_local/<replication id>` on the source and on the
target. Both copies carry the same session id and history; comparing them
tells us how far a previous run got.
"""

import logging
import time
from typing import Any, Optional

from docrelay.api.constants import (
    LOCAL_DOC_PREFIX,
    MAX_CHECKPOINT_HISTORY,
    REPLICATION_ID_VERSION,
    START_SEQUENCE,
    LogFields,
)
from docrelay.api.errors import MissingFieldError
from docrelay.types import JsonDict, SequenceToken

logger = logging.getLogger(__name__)


def replication_log_id(replication_id: str) -> str:
    return LOCAL_DOC_PREFIX + replication_id


def format_timestamp(seconds: float) -> str:
    """Format a unix time the way CouchDB's replicator does (RFC 1123)."""
    return time.strftime("%a, %d %b %Y %H:%M:%S GMT", time.gmtime(seconds))


def _require(log: JsonDict, field: str, where: str) -> Any:
    try:
        return log[field]
    except KeyError:
        raise MissingFieldError(field, where)


def compare_replication_logs(
    source_log: Optional[JsonDict],
    target_log: Optional[JsonDict],
    since_seq: SequenceToken,
) -> SequenceToken:
    """Work out where to resume the change feed from.

    Args:
        source_log: the replication log read from the source, if any
        target_log: the replication log read from the target, if any
        since_seq: where to start if there is nothing to go on

    Returns:
        `since_seq` if either log is missing; the recorded sequence of the
        latest session both logs agree on otherwise, or the start of the feed
        if they share no session at all.

    Raises:
        MissingFieldError: if a log being consulted is malformed.
    """
    if source_log is None or target_log is None:
        return since_seq

    source_session = _require(
        source_log, LogFields.SESSION_ID, "source replication log"
    )
    target_session = _require(
        target_log, LogFields.SESSION_ID, "target replication log"
    )

    if source_session == target_session:
        return _require(source_log, LogFields.SOURCE_LAST_SEQ, "source replication log")

    # The last run did not complete on both sides. Find the most recent session
    # both peers recorded: everything up to its sequence is on the target.
    source_history = _require(source_log, LogFields.HISTORY, "source replication log")
    target_history = _require(target_log, LogFields.HISTORY, "target replication log")

    target_sessions = {
        _require(entry, LogFields.SESSION_ID, "target replication history")
        for entry in target_history
    }
    for entry in source_history:
        session_id = _require(entry, LogFields.SESSION_ID, "source replication history")
        if session_id in target_sessions:
            return _require(
                entry, LogFields.RECORDED_SEQ, "source replication history"
            )

    logger.info("Replication logs share no session: starting from scratch")
    return START_SEQUENCE


def build_replication_log(
    replication_id: str,
    session_id: str,
    source_last_seq: SequenceToken,
    start_time: float,
    end_time: float,
    summary: JsonDict,
    previous_history: Optional[list] = None,
) -> JsonDict:
    """Build the replication log to record at the end of a run.

    Args:
        replication_id: the id of the replication
        session_id: a fresh id for this run
        source_last_seq: the source's update sequence, which this run has
            brought the target up to
        start_time: when the run started, in seconds since the epoch
        end_time: when the run ended, in seconds since the epoch
        summary: the run's summary; the counters it holds are copied into the
            new history entry
        previous_history: the history of the source's previous log, most
            recent first

    Returns:
        the log document, without a `_rev`.
    """
    entry: JsonDict = {
        LogFields.SESSION_ID: session_id,
        LogFields.RECORDED_SEQ: source_last_seq,
        "start_time": format_timestamp(start_time),
        "end_time": format_timestamp(end_time),
    }
    for counter in LogFields.COUNTERS:
        if summary.get(counter) is not None:
            entry[counter] = summary[counter]

    history = [entry] + list(previous_history or [])

    return {
        "_id": replication_log_id(replication_id),
        LogFields.HISTORY: history[:MAX_CHECKPOINT_HISTORY],
        "replication_id_version": REPLICATION_ID_VERSION,
        LogFields.SESSION_ID: session_id,
        LogFields.SOURCE_LAST_SEQ: source_last_seq,
    }
