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

"""The replication state machine.

A run goes through these steps, in order, stopping at the first failure:

    verify_peers -> generate_replication_id -> get_replication_log ->
    compare_replication_logs -> locate_changed_documents_and_replicate ->
    put_replication_log -> ensure_full_commit

Nothing is written to the checkpoints unless every step before
`put_replication_log` succeeded. Failures to replicate a single document do
not stop the run: they are recorded in the summary.
"""

import hashlib
import logging
from typing import Any, Dict, List, Optional, Tuple

from canonicaljson import encode_canonical_json
from prometheus_client import Counter

from docrelay.api.constants import (
    DESIGN_DOC_PREFIX,
    DatabaseInfoFields,
    LogFields,
    ReservedFilters,
)
from docrelay.api.errors import (
    CodeMessageException,
    DocumentTransferError,
    HttpResponseException,
    MissingFieldError,
    PeerUnreachableError,
    ReplicationError,
    RequestSendFailed,
)
from docrelay.http import RequestTimedOutError
from docrelay.peer.interfaces import AttachmentResponse, PeerClient
from docrelay.replication.changes import ChangeFeed, get_mapping, merge_revision_diff
from docrelay.replication.checkpoint import (
    build_replication_log,
    compare_replication_logs,
    replication_log_id,
)
from docrelay.replication.result import ReplicationResult
from docrelay.types import (
    JsonDict,
    ReplicationTask,
    RevisionDifference,
    SequenceToken,
)
from docrelay.util import Clock
from docrelay.util.stringutils import random_string

logger = logging.getLogger(__name__)

replication_runs_counter = Counter(
    "docrelay_replication_runs", "Replication runs, by outcome", ["outcome"]
)
replicated_docs_counter = Counter(
    "docrelay_replicated_revisions",
    "Revisions written to the target, by replication mode",
    ["mode"],
)
document_failures_counter = Counter(
    "docrelay_replication_document_failures",
    "Documents which failed to replicate, by replication mode",
    ["mode"],
)

# how long to wait before retrying a document whose transfer could not reach
# the source
TRANSFER_RETRY_DELAY_SECONDS = 0.0005

# fields of the checkpoint document which are not part of the run summary
_INTERNAL_LOG_FIELDS = ("_id", "_rev", "_revisions")


def _peer_path(peer: PeerClient, doc_id: str) -> str:
    return "/%s/%s" % (peer.database, doc_id)


def _check_database_info(info: JsonDict, peer_name: str) -> None:
    for field in DatabaseInfoFields.REQUIRED:
        if field not in info:
            raise MissingFieldError(field, "%s database info" % (peer_name,))


class ReplicationEngine:
    """Runs one replication from `source` to `target`, as described by `task`.

    The engine owns the task for the duration of the run: it fills in the
    replication id and moves `since_seq` along as the change feed is read.
    """

    def __init__(
        self,
        source: PeerClient,
        target: PeerClient,
        task: ReplicationTask,
        clock: Clock,
    ):
        self.source = source
        self.target = target
        self.task = task
        self.clock = clock

        self._start_time: Optional[float] = None
        self._source_log: Optional[JsonDict] = None
        self._target_log: Optional[JsonDict] = None

        # the live feed of a continuous replication, while one is being read
        self._feed: Optional[ChangeFeed] = None

    async def start(self) -> JsonDict:
        """Run the replication.

        Returns:
            the run summary, merged with the checkpoint that was recorded.

        Raises:
            PeerUnreachableError, MissingFieldError, HttpResponseException,
            RequestSendFailed: if the run could not be completed. No
            checkpoint is written in that case.
        """
        self._start_time = self.clock.time()
        logger.info(
            "Starting replication of %s to %s",
            self.source.database,
            self.target.database,
        )

        try:
            await self.verify_peers()
            self.task.replication_id = await self.generate_replication_id()

            source_log, target_log = await self.get_replication_log()
            self.task.since_seq = self.compare_replication_logs(source_log, target_log)
            logger.info(
                "Replication %s resuming from sequence %r",
                self.task.replication_id,
                self.task.since_seq,
            )

            result = await self.locate_changed_documents_and_replicate()

            replication_log = await self.put_replication_log(
                result, end_time=self.clock.time()
            )
            await self.ensure_full_commit()
        except Exception:
            replication_runs_counter.labels("failed").inc()
            raise

        replication_runs_counter.labels("completed").inc()
        replicated_docs_counter.labels(self._mode()).inc(result.docs_written)
        logger.info(
            "Replication %s complete: %d revisions written, %d failures",
            self.task.replication_id,
            result.docs_written,
            result.doc_write_failures,
        )

        summary = result.as_dict()
        summary.update(replication_log)
        for field in _INTERNAL_LOG_FIELDS:
            summary.pop(field, None)
        return summary

    def cancel(self) -> bool:
        """Stop a continuous replication by closing its change feed.

        The run then completes as if the feed had ended: the documents seen so
        far are checkpointed.

        Returns:
            True if there was a live feed to close.
        """
        if self._feed is None:
            return False
        logger.info("Cancelling replication %s", self.task.replication_id)
        self._feed.close()
        return True

    def _mode(self) -> str:
        return "continuous" if self.task.continuous else "normal"

    async def verify_peers(self) -> Tuple[JsonDict, JsonDict]:
        """Check that both databases exist, creating the target if allowed.

        Returns:
            the database info of the source and of the target.

        Raises:
            PeerUnreachableError: if the source could not be read, or the
                target does not exist and may not be created.
            MissingFieldError: if a database info lacks a required field.
        """
        try:
            source_info = await self.source.get_database_info()
        except (CodeMessageException, RequestSendFailed) as e:
            logger.warning("Source database info failed: %s", e)
            raise PeerUnreachableError("source") from e

        try:
            target_info = await self.target.get_database_info()
        except HttpResponseException as e:
            if e.code != 404:
                raise
            if not self.task.create_target:
                raise PeerUnreachableError("target") from e

            logger.info("Target %s does not exist: creating it", self.target.database)
            await self.target.create_database()
            target_info = await self.target.get_database_info()

        _check_database_info(source_info, "source")
        _check_database_info(target_info, "target")
        return source_info, target_info

    async def generate_replication_id(self) -> str:
        """Derive the id of this replication.

        The same peers and task options always give the same id, so that a
        later run finds the checkpoints of an earlier one. The source of a
        named filter function is part of the id: changing the filter starts
        the replication afresh.
        """
        task = self.task

        filter_code = ""
        if (
            task.filter is not None
            and not task.parameters
            and not ReservedFilters.is_reserved(task.filter)
        ):
            filter_code = await self._get_filter_code(task.filter)

        parts = (
            self.source.identity,
            self.source.database,
            self.target.database,
            encode_canonical_json(task.doc_ids).decode("utf-8"),
            "1" if task.create_target else "0",
            "1" if task.continuous else "0",
            task.filter or "",
            filter_code,
            task.style,
            encode_canonical_json(task.heartbeat).decode("utf-8"),
        )
        return hashlib.md5("".join(parts).encode("utf-8")).hexdigest()

    async def _get_filter_code(self, filter_name: str) -> str:
        design_doc, function_name = filter_name.split("/", 1)
        doc_id = DESIGN_DOC_PREFIX + design_doc

        response = await self.source.find_document(doc_id)
        if response.status != 200:
            raise HttpResponseException.from_response(
                _peer_path(self.source, doc_id), response
            )

        filters = (response.body or {}).get("filters") or {}
        if function_name not in filters:
            raise MissingFieldError("filters." + function_name, "design document")
        return filters[function_name]

    async def get_replication_log(
        self,
    ) -> Tuple[Optional[JsonDict], Optional[JsonDict]]:
        """Read this replication's checkpoints from both peers.

        Returns:
            the source's and the target's replication logs; None for a peer
            which has none.

        Raises:
            HttpResponseException: if a peer failed to answer with either the
                log or a 404.
        """
        assert self.task.replication_id is not None
        doc_id = replication_log_id(self.task.replication_id)

        logs = []
        for peer in (self.source, self.target):
            response = await peer.find_document(doc_id)
            if response.status == 200:
                logs.append(response.body)
            elif response.status == 404:
                logs.append(None)
            else:
                raise HttpResponseException.from_response(
                    _peer_path(peer, doc_id), response
                )

        self._source_log, self._target_log = logs
        return self._source_log, self._target_log

    def compare_replication_logs(
        self, source_log: Optional[JsonDict], target_log: Optional[JsonDict]
    ) -> SequenceToken:
        return compare_replication_logs(source_log, target_log, self.task.since_seq)

    def _changes_options(self, since: SequenceToken) -> Dict[str, Any]:
        return {
            "style": self.task.style,
            "since": since,
            "filter": self.task.filter,
            "parameters": self.task.parameters,
            "doc_ids": self.task.doc_ids,
        }

    async def locate_changed_documents_and_replicate(self) -> ReplicationResult:
        """Read the change feed and copy what the target is missing."""
        if self.task.continuous:
            return await self._replicate_continuous()
        return await self._replicate_normal()

    async def _replicate_normal(self) -> ReplicationResult:
        result = ReplicationResult(start_last_seq=self.task.since_seq)

        accumulated: RevisionDifference = {}
        cursor = self.task.since_seq
        while True:
            options = self._changes_options(cursor)
            options["limit"] = self.task.changes_limit
            changes = await self.source.get_changes(options)

            rows = changes.get("results") or []
            last_seq = changes.get("last_seq")
            if not rows:
                break

            result.missing_checked += len(rows)
            mapping = get_mapping(changes)
            if mapping:
                diff = await self.target.get_revision_difference(mapping)
                merge_revision_diff(accumulated, diff, self.task.style)

            if last_seq is None or last_seq == cursor:
                break
            cursor = last_seq
            self.task.since_seq = cursor

            # a page which ends before its own last row means the feed is
            # exhausted
            if last_seq not in {row.get("seq") for row in rows}:
                break

        result.end_last_seq = cursor
        logger.info(
            "Read %d changes up to sequence %r: %d documents need replicating",
            result.missing_checked,
            cursor,
            len(accumulated),
        )

        result.merge(await self.replicate_changes(accumulated))
        return result

    async def _replicate_continuous(self) -> ReplicationResult:
        result = ReplicationResult(continuous=True, start_last_seq=self.task.since_seq)

        options = self._changes_options(self.task.since_seq)
        options.update(self.task.keepalive_options())
        stream = await self.source.get_changes_stream(options)

        feed = ChangeFeed(stream, self.clock)
        self._feed = feed
        try:
            async for change in feed:
                await self._replicate_one_change(change, result)
                if feed.last_seq is not None:
                    self.task.since_seq = feed.last_seq
        finally:
            self._feed = None
            feed.close()

        result.end_last_seq = self.task.since_seq
        if feed.last_seq is not None:
            result.end_last_seq = self.task.since_seq = feed.last_seq
        return result

    async def _replicate_one_change(
        self, change: JsonDict, result: ReplicationResult
    ) -> None:
        doc_id = change.get("id")
        if doc_id is None:
            logger.warning("Ignoring change without a document id: %r", change)
            return

        result.missing_checked += 1
        try:
            mapping = get_mapping({"results": [change]})
            diff: RevisionDifference = {}
            if mapping.get(doc_id):
                diff = await self.target.get_revision_difference(mapping)
            doc_result = await self.replicate_changes(diff)
        except (ReplicationError, CodeMessageException, RequestSendFailed) as e:
            logger.warning("Replication of document %s failed: %s", doc_id, e)
            result.record_error(doc_id, e)
            result.failure_count += 1
            document_failures_counter.labels("continuous").inc()
            return

        result.merge(doc_result)
        if doc_result.error_response:
            logger.warning("Replication of document %s failed", doc_id)
            result.failure_count += 1
            document_failures_counter.labels("continuous").inc()
        else:
            logger.info("Document %s replicated", doc_id)
            result.success_count += 1

    async def replicate_changes(
        self, revision_diff: RevisionDifference
    ) -> ReplicationResult:
        """Copy the missing revisions listed in a revision difference.

        Documents are handled in batches of `bulk_docs_limit`: the revisions
        of every document in a batch are read from the source, then written
        to the target in bulk with new edits disabled, so that they keep
        their revision ids.

        Raises:
            HttpResponseException, RequestSendFailed: if a peer failed, rather
                than a single document.
        """
        result = ReplicationResult()
        limit = self.task.bulk_docs_limit

        doc_ids = list(revision_diff)
        for i in range(0, len(doc_ids), limit):
            updater = self.target.create_bulk_updater()
            updater.set_new_edits(False)
            pending = False

            for doc_id in doc_ids[i : i + limit]:
                missing = revision_diff[doc_id].get("missing") or []
                if not missing:
                    continue

                result.docs_read += 1
                result.missing_found += len(missing)
                try:
                    docs, attachment_responses = await self._transfer_changed_documents(
                        doc_id, missing
                    )
                except DocumentTransferError as e:
                    logger.warning("Could not replicate %s: %s", doc_id, e)
                    result.record_error(doc_id, e)
                    document_failures_counter.labels(self._mode()).inc()
                    continue

                if docs:
                    updater.update_documents(docs)
                    pending = True
                result.record_attachment_responses(doc_id, attachment_responses)

            if pending:
                for response in await updater.execute_by_limit(limit):
                    result.record_bulk_response(response)

        return result

    async def _transfer_changed_documents(
        self, doc_id: str, missing: List[str]
    ) -> Tuple[List[JsonDict], List[AttachmentResponse]]:
        try:
            return await self.source.transfer_changed_documents(
                doc_id, missing, self.target
            )
        except (RequestSendFailed, RequestTimedOutError) as e:
            logger.info("Fetching %s failed (%s): retrying once", doc_id, e)

        await self.clock.sleep(TRANSFER_RETRY_DELAY_SECONDS)
        return await self.source.transfer_changed_documents(
            doc_id, missing, self.target
        )

    async def put_replication_log(
        self, result: ReplicationResult, end_time: Optional[float] = None
    ) -> JsonDict:
        """Record a checkpoint for this run on both peers.

        Each copy is written over the peer's previous log, if it had one.

        Returns:
            the checkpoint document, without `_rev`.

        Raises:
            HttpResponseException: if either peer refused the write.
        """
        assert self.task.replication_id is not None
        if end_time is None:
            end_time = self.clock.time()

        source_info = await self.source.get_database_info()
        if DatabaseInfoFields.UPDATE_SEQ not in source_info:
            raise MissingFieldError(
                DatabaseInfoFields.UPDATE_SEQ, "source database info"
            )

        previous_history = (self._source_log or {}).get(LogFields.HISTORY)
        if not isinstance(previous_history, list):
            previous_history = []

        replication_log = build_replication_log(
            replication_id=self.task.replication_id,
            session_id=random_string(32),
            source_last_seq=source_info[DatabaseInfoFields.UPDATE_SEQ],
            start_time=self._start_time if self._start_time is not None else end_time,
            end_time=end_time,
            summary=result.as_dict(),
            previous_history=previous_history,
        )

        # the target first: a source checkpoint without a matching target one
        # is harmless, the other way round it would skip changes
        for peer, previous_log in (
            (self.target, self._target_log),
            (self.source, self._source_log),
        ):
            doc = dict(replication_log)
            if previous_log and "_rev" in previous_log:
                doc["_rev"] = previous_log["_rev"]

            response = await peer.put_document(replication_log["_id"], doc)
            if not response.ok:
                raise HttpResponseException.from_response(
                    _peer_path(peer, replication_log["_id"]), response
                )

        return replication_log

    async def ensure_full_commit(self) -> None:
        await self.target.ensure_full_commit()
