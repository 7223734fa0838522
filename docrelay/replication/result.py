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
from typing import Dict, List, Optional

import attr

from docrelay.api.errors import DocumentTransferError
from docrelay.peer.interfaces import AttachmentResponse, BulkUpdateResponse
from docrelay.types import JsonDict, SequenceToken


@attr.s(slots=True)
class ReplicationResult:
    """What happened during a replication run.

    Attributes:
        multipart_response: document id -> the responses to the uploads of
            its attachment-bearing revisions.
        bulk_response: document id -> the statuses of the bulk writes which
            carried it.
        error_response: document id -> the errors met replicating it.
        docs_read: documents whose missing revisions were fetched.
        docs_written: revisions written to the target.
        doc_write_failures: revisions which could not be read or written.
        missing_checked: change rows checked against the target.
        missing_found: revisions the target turned out to be missing.
        start_last_seq: the sequence the run started reading from.
        end_last_seq: the last sequence the run read.
        success_count: continuous mode only: changes replicated.
        failure_count: continuous mode only: changes which failed.
    """

    continuous = attr.ib(type=bool, default=False)

    multipart_response = attr.ib(type=Dict[str, List[JsonDict]], factory=dict)
    bulk_response = attr.ib(type=Dict[str, List[int]], factory=dict)
    error_response = attr.ib(type=Dict[str, List[Exception]], factory=dict)

    docs_read = attr.ib(type=int, default=0)
    docs_written = attr.ib(type=int, default=0)
    doc_write_failures = attr.ib(type=int, default=0)
    missing_checked = attr.ib(type=int, default=0)
    missing_found = attr.ib(type=int, default=0)

    start_last_seq = attr.ib(type=Optional[SequenceToken], default=None)
    end_last_seq = attr.ib(type=Optional[SequenceToken], default=None)

    success_count = attr.ib(type=int, default=0)
    failure_count = attr.ib(type=int, default=0)

    def record_error(self, doc_id: str, error: Exception) -> None:
        self.error_response.setdefault(doc_id, []).append(error)
        self.doc_write_failures += 1

    def record_attachment_responses(
        self, doc_id: str, responses: List[AttachmentResponse]
    ) -> None:
        # A failed upload has no `rev`, so it is kept apart from the successes.
        for response in responses:
            if isinstance(response, Exception):
                self.record_error(doc_id, response)
            else:
                self.multipart_response.setdefault(doc_id, []).append(response)
                self.docs_written += 1

    def record_bulk_response(self, response: BulkUpdateResponse) -> None:
        for doc_id in dict.fromkeys(response.doc_ids):
            self.bulk_response.setdefault(doc_id, []).append(response.status)

        # one row per revision sent; with new_edits disabled only the
        # failures come back
        errors = response.errors()
        self.docs_written += len(response.doc_ids) - len(errors)
        for row in errors:
            doc_id = row.get("id", "")
            self.record_error(
                doc_id,
                DocumentTransferError(
                    doc_id, "%s: %s" % (row["error"], row.get("reason", ""))
                ),
            )

    def merge(self, other: "ReplicationResult") -> None:
        """Fold the result of replicating some more documents into this one."""
        for ours, theirs in (
            (self.multipart_response, other.multipart_response),
            (self.bulk_response, other.bulk_response),
            (self.error_response, other.error_response),
        ):
            for doc_id, items in theirs.items():
                ours.setdefault(doc_id, []).extend(items)

        self.docs_read += other.docs_read
        self.docs_written += other.docs_written
        self.doc_write_failures += other.doc_write_failures
        self.missing_checked += other.missing_checked
        self.missing_found += other.missing_found

    def as_dict(self) -> JsonDict:
        summary: JsonDict = {
            "multipart_response": self.multipart_response,
            "bulk_response": self.bulk_response,
            "error_response": self.error_response,
            "docs_read": self.docs_read,
            "docs_written": self.docs_written,
            "doc_write_failures": self.doc_write_failures,
            "missing_checked": self.missing_checked,
            "missing_found": self.missing_found,
            "start_last_seq": self.start_last_seq,
            "end_last_seq": self.end_last_seq,
        }
        if self.continuous:
            summary["success_count"] = self.success_count
            summary["failure_count"] = self.failure_count
        return summary

