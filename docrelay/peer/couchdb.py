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

"""A peer speaking the CouchDB HTTP API."""

import logging
import urllib.parse
from typing import Any, Dict, List, Optional, Sequence, Tuple

from canonicaljson import encode_canonical_json

from docrelay.api.constants import FeedTypes, ReservedFilters
from docrelay.api.errors import DocumentTransferError, HttpResponseException
from docrelay.http import redact_uri
from docrelay.http.client import LineStream, SimpleHttpClient, encode_basic_auth
from docrelay.peer.interfaces import (
    AttachmentResponse,
    BulkUpdateResponse,
    DocumentResponse,
    PeerClient,
)
from docrelay.types import JsonDict, RevisionDifference, RevisionMapping

logger = logging.getLogger(__name__)

# options of `get_changes` which are passed through as query parameters
_CHANGES_QUERY_OPTIONS = (
    "feed",
    "style",
    "since",
    "filter",
    "limit",
    "heartbeat",
    "timeout",
)


def _quote_doc_id(doc_id: str) -> str:
    """Quote a document id for use in a path.

    The slash after the `_design/` and `_local/` prefixes is part of the
    path, not of the id.
    """
    for prefix in ("_design/", "_local/"):
        if doc_id.startswith(prefix):
            return prefix + urllib.parse.quote(doc_id[len(prefix) :], safe="")
    return urllib.parse.quote(doc_id, safe="")


def _encode_query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return encode_canonical_json(value).decode("utf-8")
    return str(value)


class CouchDBBulkUpdater:
    """Collects documents to be written with `POST /{db}/_bulk_docs`."""

    def __init__(self, peer: "CouchDBPeer"):
        self._peer = peer
        self._docs: List[JsonDict] = []
        self._new_edits = True

    def update_documents(self, docs: Sequence[JsonDict]) -> None:
        self._docs.extend(docs)

    def set_new_edits(self, new_edits: bool) -> None:
        self._new_edits = new_edits

    async def execute(self) -> BulkUpdateResponse:
        docs, self._docs = self._docs, []
        return await self._post(docs)

    async def execute_by_limit(self, limit: int) -> List[BulkUpdateResponse]:
        docs, self._docs = self._docs, []
        responses = []
        for i in range(0, len(docs), limit):
            responses.append(await self._post(docs[i : i + limit]))
        return responses

    async def _post(self, docs: List[JsonDict]) -> BulkUpdateResponse:
        doc_ids = [doc["_id"] for doc in docs]
        body: JsonDict = {"docs": docs}
        if not self._new_edits:
            body["new_edits"] = False

        code, rows = await self._peer.http_client.request_json(
            "POST",
            self._peer.db_uri("_bulk_docs"),
            json_body=body,
            headers=self._peer.auth_headers,
        )
        if not 200 <= code < 300:
            raise HttpResponseException.from_response(
                self._peer.db_path("_bulk_docs"), DocumentResponse(code, rows)
            )
        return BulkUpdateResponse(
            status=code, doc_ids=doc_ids, body=rows if isinstance(rows, list) else []
        )


class CouchDBPeer:
    """A database on a CouchDB (or CouchDB-compatible) server."""

    def __init__(
        self,
        http_client: SimpleHttpClient,
        base_url: str,
        database: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self._database = database

        self.auth_headers: Optional[Dict[bytes, List[bytes]]] = None
        if username is not None:
            self.auth_headers = encode_basic_auth(username, password or "")

    def __repr__(self) -> str:
        return "<CouchDBPeer %s/%s>" % (redact_uri(self.base_url), self._database)

    @property
    def identity(self) -> str:
        return redact_uri(self.base_url)

    @property
    def database(self) -> str:
        return self._database

    def db_path(self, *segments: str) -> str:
        """The path of a resource in this database, eg `/db/_changes`."""
        path = "/" + urllib.parse.quote(self._database, safe="")
        for segment in segments:
            path += "/" + segment
        return path

    def db_uri(self, *segments: str) -> str:
        return self.base_url + self.db_path(*segments)

    async def get_database_info(self) -> JsonDict:
        return await self.http_client.get_json(
            self.db_uri(), headers=self.auth_headers
        )

    async def create_database(self) -> None:
        logger.info("Creating database %s on %s", self._database, self.identity)
        await self.http_client.put_json(self.db_uri(), {}, headers=self.auth_headers)

    async def find_document(self, doc_id: str) -> DocumentResponse:
        code, body = await self.http_client.request_json(
            "GET", self.db_uri(_quote_doc_id(doc_id)), headers=self.auth_headers
        )
        return DocumentResponse(code, body)

    async def put_document(self, doc_id: str, body: JsonDict) -> DocumentResponse:
        code, response_body = await self.http_client.request_json(
            "PUT",
            self.db_uri(_quote_doc_id(doc_id)),
            json_body=body,
            headers=self.auth_headers,
        )
        return DocumentResponse(code, response_body)

    def _changes_query(self, options: Dict[str, Any]) -> Tuple[Dict[str, str], Any]:
        """Split change feed options into query parameters and a POST body."""
        args = {
            name: _encode_query_value(options[name])
            for name in _CHANGES_QUERY_OPTIONS
            if options.get(name) is not None
        }
        for name, value in (options.get("parameters") or {}).items():
            args[name] = _encode_query_value(value)

        json_body = None
        doc_ids = options.get("doc_ids")
        if options.get("filter") == ReservedFilters.DOC_IDS and doc_ids is not None:
            json_body = {"doc_ids": list(doc_ids)}
        return args, json_body

    async def get_changes(self, options: Dict[str, Any]) -> JsonDict:
        options = dict(options, feed=FeedTypes.NORMAL)
        args, json_body = self._changes_query(options)
        if json_body is not None:
            return await self.http_client.post_json_get_json(
                self.db_uri("_changes"), json_body, args=args, headers=self.auth_headers
            )
        return await self.http_client.get_json(
            self.db_uri("_changes"), args=args, headers=self.auth_headers
        )

    async def get_changes_stream(self, options: Dict[str, Any]) -> LineStream:
        options = dict(options, feed=FeedTypes.CONTINUOUS)
        args, json_body = self._changes_query(options)

        # give up on the connection if it stays silent well past the point the
        # server should have sent a heartbeat or closed the feed
        if options.get("heartbeat") is not None:
            idle_timeout = 3 * options["heartbeat"] / 1000
        else:
            idle_timeout = (options.get("timeout") or 10000) / 1000 + 30

        return await self.http_client.open_line_stream(
            "POST" if json_body is not None else "GET",
            self.db_uri("_changes"),
            json_body=json_body,
            args=args,
            headers=self.auth_headers,
            idle_timeout=idle_timeout,
        )

    async def get_revision_difference(
        self, mapping: RevisionMapping
    ) -> RevisionDifference:
        return await self.http_client.post_json_get_json(
            self.db_uri("_revs_diff"), mapping, headers=self.auth_headers
        )

    def create_bulk_updater(self) -> CouchDBBulkUpdater:
        return CouchDBBulkUpdater(self)

    async def transfer_changed_documents(
        self, doc_id: str, revs: List[str], target: PeerClient
    ) -> Tuple[List[JsonDict], List[AttachmentResponse]]:
        # JSON rather than multipart: attachments come back inline as base64
        args = {
            "open_revs": encode_canonical_json(list(revs)).decode("utf-8"),
            "revs": "true",
            "latest": "true",
            "attachments": "true",
        }
        code, rows = await self.http_client.request_json(
            "GET",
            self.db_uri(_quote_doc_id(doc_id)),
            args=args,
            headers=self.auth_headers,
        )
        if code == 404:
            raise DocumentTransferError(doc_id, "not found on the source", code=code)
        if not 200 <= code < 300 or not isinstance(rows, list):
            raise HttpResponseException.from_response(
                self.db_path(_quote_doc_id(doc_id)), DocumentResponse(code, rows)
            )

        docs: List[JsonDict] = []
        attachment_responses: List[AttachmentResponse] = []
        for row in rows:
            if "ok" not in row:
                # {"missing": rev}: the revision was compacted away or never
                # existed; nothing to copy.
                logger.info(
                    "Revision %s of %s is missing on the source",
                    row.get("missing"),
                    doc_id,
                )
                continue

            doc = row["ok"]
            if doc.get("_attachments"):
                try:
                    attachment_responses.append(await target.upload_revision(doc))
                except DocumentTransferError as e:
                    attachment_responses.append(e)
            else:
                docs.append(doc)

        return docs, attachment_responses

    async def upload_revision(self, doc: JsonDict) -> JsonDict:
        doc_id = doc["_id"]
        code, body = await self.http_client.request_json(
            "PUT",
            self.db_uri(_quote_doc_id(doc_id)),
            json_body=doc,
            args={"new_edits": "false"},
            headers=self.auth_headers,
        )
        if not 200 <= code < 300:
            reason = None
            if isinstance(body, dict):
                reason = body.get("reason", body.get("error"))
            raise DocumentTransferError(
                doc_id,
                "upload of revision %s failed: %s" % (doc.get("_rev"), reason or code),
                code=code,
            )
        return body

    async def ensure_full_commit(self) -> None:
        await self.http_client.post_json_get_json(
            self.db_uri("_ensure_full_commit"), {}, headers=self.auth_headers
        )
