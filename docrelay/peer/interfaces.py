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

"""The capabilities the replicator needs from a source or target database.

`docrelay.peer.couchdb.CouchDBPeer` implements these over HTTP; anything else
offering the same methods can be replicated from or to.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import attr
from typing_extensions import Protocol

from docrelay.types import JsonDict, RevisionDifference, RevisionMapping


@attr.s(slots=True, frozen=True, auto_attribs=True)
class DocumentResponse:
    """The status and decoded body of a single-document request."""

    status: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@attr.s(slots=True, frozen=True, auto_attribs=True)
class BulkUpdateResponse:
    """The outcome of one `_bulk_docs` request.

    Attributes:
        status: the HTTP status of the request.
        doc_ids: the ids of the documents the request carried.
        body: the per-document rows returned by the peer. With new edits
            disabled only failed rows are normally returned.
    """

    status: int
    doc_ids: List[str]
    body: List[JsonDict] = attr.Factory(list)

    def errors(self) -> List[JsonDict]:
        return [row for row in self.body if "error" in row]


# The result of uploading one attachment-bearing revision: the peer's JSON
# response, or the exception describing why it failed.
AttachmentResponse = Union[JsonDict, Exception]


class ChangesStream(Protocol):
    """A live, line-delimited change feed."""

    async def read_line(self) -> Optional[bytes]:
        """The next line, or None once the feed has ended or been closed."""
        ...

    def close(self) -> None:
        ...


class BulkUpdater(Protocol):
    """Collects documents and writes them to the peer with `_bulk_docs`."""

    def update_documents(self, docs: Sequence[JsonDict]) -> None:
        ...

    def set_new_edits(self, new_edits: bool) -> None:
        ...

    async def execute(self) -> BulkUpdateResponse:
        ...

    async def execute_by_limit(self, limit: int) -> List[BulkUpdateResponse]:
        """Write the collected documents in requests of at most `limit` docs."""
        ...


class PeerClient(Protocol):
    """One end of a replication."""

    @property
    def identity(self) -> str:
        """A stable name for the server, without credentials. Part of the
        replication id."""
        ...

    @property
    def database(self) -> str:
        ...

    async def get_database_info(self) -> JsonDict:
        """
        Raises:
            HttpResponseException: with code 404 if the database does not exist.
        """
        ...

    async def create_database(self) -> None:
        ...

    async def find_document(self, doc_id: str) -> DocumentResponse:
        ...

    async def put_document(self, doc_id: str, body: JsonDict) -> DocumentResponse:
        ...

    async def get_changes(self, options: Dict[str, Any]) -> JsonDict:
        """Read a page of the normal change feed.

        Returns `{"results": [...], "last_seq": ...}`
        """
        ...

    async def get_changes_stream(self, options: Dict[str, Any]) -> ChangesStream:
        ...

    async def get_revision_difference(
        self, mapping: RevisionMapping
    ) -> RevisionDifference:
        ...

    def create_bulk_updater(self) -> BulkUpdater:
        ...

    async def transfer_changed_documents(
        self, doc_id: str, revs: List[str], target: "PeerClient"
    ) -> Tuple[List[JsonDict], List[AttachmentResponse]]:
        """Read the given revisions of a document, with their history.

        Revisions without attachments are returned, to be written in bulk by
        the caller. Revisions with attachments are written to `target`
        straight away; the responses to those writes are returned.

        Raises:
            DocumentTransferError: if this document could not be read.
            HttpResponseException, RequestSendFailed: if the peer failed.
        """
        ...

    async def upload_revision(self, doc: JsonDict) -> JsonDict:
        """Write one revision, with its inline attachments, keeping its `_rev`.

        Raises:
            DocumentTransferError: if the peer refused the revision.
        """
        ...

    async def ensure_full_commit(self) -> None:
        ...
