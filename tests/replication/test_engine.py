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
from twisted.internet import defer
from twisted.internet.error import ConnectError

from docrelay.api.errors import (
    DocumentTransferError,
    HttpResponseException,
    MissingFieldError,
    PeerUnreachableError,
    RequestSendFailed,
)
from docrelay.http import RequestTimedOutError
from docrelay.peer.interfaces import DocumentResponse
from docrelay.replication.engine import ReplicationEngine
from docrelay.types import ReplicationTask

from tests import unittest
from tests.test_utils import simple_async_mock
from tests.test_utils.fake_peer import FakeChangesStream, FakePeer, change_line

ATTACHMENTS = {
    "hello.txt": {
        "content_type": "text/plain",
        "digest": "md5-XrY7u+Ae7tCTyyK7j1rNww==",
        "data": "aGVsbG8gd29ybGQ=",
    }
}


def add_docs(peer: FakePeer, count: int) -> None:
    for i in range(count):
        peer.add_document("id%d" % (i,), "1-abc%d" % (i,), value=i)


def connection_failure() -> RequestSendFailed:
    return RequestSendFailed(ConnectError(), can_retry=True)


class ReplicationEngineTestCase(unittest.ReactorTestCase):
    def prepare(self, reactor, clock):
        self.source = FakePeer("source-db", "http://source.test:5984")
        self.target = FakePeer("target-db", "http://target.test:5984")
        self.task = ReplicationTask()

    def make_engine(self, **task_fields) -> ReplicationEngine:
        for name, value in task_fields.items():
            setattr(self.task, name, value)
        return ReplicationEngine(self.source, self.target, self.task, self.clock)

    def log_id(self) -> str:
        return "_local/" + self.task.replication_id


class VerifyPeersTestCase(ReplicationEngineTestCase):
    def test_both_peers_exist(self):
        source_info, target_info = self.get_success(self.make_engine().verify_peers())
        self.assertEqual(source_info["db_name"], "source-db")
        self.assertEqual(target_info["db_name"], "target-db")

    def test_missing_target(self):
        self.target.exists = False
        f = self.get_failure(self.make_engine().verify_peers(), PeerUnreachableError)
        self.assertEqual(f.value.peer, "target")
        self.assertEqual(str(f.value), "Target database does not exist.")
        self.assertFalse(self.target.exists)

    def test_missing_target_is_created(self):
        self.target.exists = False
        engine = self.make_engine(create_target=True)
        _, target_info = self.get_success(engine.verify_peers())
        self.assertTrue(self.target.exists)
        self.assertEqual(target_info["db_name"], "target-db")

    def test_unreachable_source(self):
        self.source.get_database_info = simple_async_mock(raises=connection_failure())
        f = self.get_failure(self.make_engine().verify_peers(), PeerUnreachableError)
        self.assertEqual(f.value.peer, "source")

    def test_missing_info_field(self):
        self.source.get_database_info = simple_async_mock(
            return_value={"db_name": "source-db", "instance_start_time": "0"}
        )
        f = self.get_failure(self.make_engine().verify_peers(), MissingFieldError)
        self.assertEqual(f.value.field, "update_seq")


class ReplicationIdTestCase(ReplicationEngineTestCase):
    def get_id(self, **task_fields) -> str:
        self.task = ReplicationTask(**task_fields)
        return self.get_success(self.make_engine().generate_replication_id())

    def test_stable(self):
        first = self.get_id()
        self.assertEqual(first, self.get_id())
        self.assertEqual(len(first), 32)

    def test_depends_on_task(self):
        base = self.get_id()
        self.assertNotEqual(base, self.get_id(continuous=True))
        self.assertNotEqual(base, self.get_id(create_target=True))
        self.assertNotEqual(base, self.get_id(heartbeat=5000))
        self.assertNotEqual(base, self.get_id(doc_ids=["a"]))

    def test_doc_id_order_is_irrelevant(self):
        self.assertEqual(
            self.get_id(doc_ids=["a", "b"]), self.get_id(doc_ids=["b", "a"])
        )

    def test_depends_on_peers(self):
        base = self.get_id()
        self.target = FakePeer("other-db", "http://target.test:5984")
        self.assertNotEqual(base, self.get_id())

    def test_filter_code_is_part_of_id(self):
        self.source.add_document(
            "_design/app", "1-a", filters={"f": "function(doc) { return true; }"}
        )
        first = self.get_id(filter="app/f")
        self.assertEqual(first, self.get_id(filter="app/f"))

        self.source.add_document(
            "_design/app", "2-b", filters={"f": "function(doc) { return false; }"}
        )
        self.assertNotEqual(first, self.get_id(filter="app/f"))

    def test_filter_with_parameters_does_not_read_design_doc(self):
        self.task = ReplicationTask(filter="app/f", parameters={"type": "post"})
        self.get_success(self.make_engine().generate_replication_id())

    def test_missing_filter_function(self):
        self.source.add_document("_design/app", "1-a", filters={"g": "code"})
        self.task = ReplicationTask(filter="app/f")
        self.get_failure(
            self.make_engine().generate_replication_id(), MissingFieldError
        )

    def test_missing_design_document(self):
        self.task = ReplicationTask(filter="app/f")
        f = self.get_failure(
            self.make_engine().generate_replication_id(), HttpResponseException
        )
        self.assertEqual(f.value.code, 404)
        self.assertEqual(f.value.path, "/source-db/_design/app")


class ReplicationLogTestCase(ReplicationEngineTestCase):
    def test_no_logs(self):
        self.task.replication_id = "abc"
        logs = self.get_success(self.make_engine().get_replication_log())
        self.assertEqual(logs, (None, None))

    def test_logs_found(self):
        self.task.replication_id = "abc"
        self.target.local_docs["_local/abc"] = {"_id": "_local/abc", "session_id": "s"}
        source_log, target_log = self.get_success(
            self.make_engine().get_replication_log()
        )
        self.assertIsNone(source_log)
        self.assertEqual(target_log["session_id"], "s")

    def test_peer_failure(self):
        self.task.replication_id = "abc"
        self.target.find_document = simple_async_mock(
            return_value=DocumentResponse(500, {"error": "oops", "reason": "broken"})
        )
        f = self.get_failure(
            self.make_engine().get_replication_log(), HttpResponseException
        )
        self.assertEqual(f.value.code, 500)
        self.assertEqual(f.value.path, "/target-db/_local/abc")


class NormalReplicationTestCase(ReplicationEngineTestCase):
    def test_replicates_all_documents(self):
        add_docs(self.source, 3)

        summary = self.get_success(self.make_engine().start())

        self.assertEqual(set(self.target.docs), {"id0", "id1", "id2"})
        for doc_id, revisions in self.source.docs.items():
            self.assertEqual(set(self.target.docs[doc_id]), set(revisions))

        self.assertEqual(summary["docs_written"], 3)
        self.assertEqual(summary["docs_read"], 3)
        self.assertEqual(summary["missing_checked"], 3)
        self.assertEqual(summary["missing_found"], 3)
        self.assertEqual(summary["doc_write_failures"], 0)
        self.assertEqual(
            summary["bulk_response"], {"id0": [201], "id1": [201], "id2": [201]}
        )
        self.assertEqual(summary["source_last_seq"], 3)
        self.assertEqual(self.target.full_commits, 1)

        for field in ("_id", "_rev", "_revisions"):
            self.assertNotIn(field, summary)

        target_log = self.target.local_docs[self.log_id()]
        source_log = self.source.local_docs[self.log_id()]
        self.assertEqual(target_log["session_id"], source_log["session_id"])
        self.assertEqual(target_log["session_id"], summary["session_id"])
        self.assertEqual(target_log["history"][0]["docs_written"], 3)
        self.assertEqual(target_log["replication_id_version"], 3)

    def test_doc_ids_restrict_replication(self):
        add_docs(self.source, 4)

        summary = self.get_success(self.make_engine(doc_ids=["id3", "id1"]).start())

        self.assertEqual(set(self.target.docs), {"id1", "id3"})
        self.assertEqual(summary["docs_written"], 2)
        self.assertEqual(self.source.changes_requests[0]["doc_ids"], ["id1", "id3"])
        self.assertEqual(self.source.changes_requests[0]["filter"], "_doc_ids")

    def test_resumes_from_checkpoint(self):
        add_docs(self.source, 2)
        first = self.get_success(self.make_engine().start())

        self.source.add_document("id2", "1-abc2")
        self.source.changes_requests.clear()
        self.task = ReplicationTask()
        second = self.get_success(self.make_engine().start())

        self.assertEqual(self.source.changes_requests[0]["since"], 2)
        self.assertEqual(second["docs_written"], 1)
        self.assertEqual(second["start_last_seq"], 2)

        history = self.source.local_docs[self.log_id()]["history"]
        self.assertEqual(
            [entry["session_id"] for entry in history],
            [second["session_id"], first["session_id"]],
        )
        self.assertEqual(self.target.local_docs[self.log_id()]["history"], history)

    def test_nothing_to_replicate(self):
        add_docs(self.source, 2)
        self.target.add_document("id0", "1-abc0")
        self.target.add_document("id1", "1-abc1")

        summary = self.get_success(self.make_engine().start())

        self.assertEqual(summary["missing_checked"], 2)
        self.assertEqual(summary["missing_found"], 0)
        self.assertEqual(summary["docs_written"], 0)
        self.assertEqual(self.target.bulk_requests, [])
        self.assertIn(self.log_id(), self.target.local_docs)

    def test_paginates_change_feed(self):
        add_docs(self.source, 5)

        summary = self.get_success(self.make_engine(changes_limit=2).start())

        self.assertEqual(
            [request["since"] for request in self.source.changes_requests],
            [0, 2, 4, 5],
        )
        self.assertEqual(summary["docs_written"], 5)
        self.assertEqual(summary["end_last_seq"], 5)
        self.assertEqual(self.task.since_seq, 5)

    def test_writes_in_batches(self):
        add_docs(self.source, 5)

        self.get_success(self.make_engine(bulk_docs_limit=2).start())

        self.assertEqual(
            self.target.bulk_requests, [["id0", "id1"], ["id2", "id3"], ["id4"]]
        )

    def test_attachments_round_trip(self):
        self.source.add_document("att", "2-beef", _attachments=ATTACHMENTS)

        summary = self.get_success(self.make_engine().start())

        doc = self.target.winning_revision("att")
        self.assertEqual(doc["_id"], "att")
        self.assertEqual(doc["_rev"], "2-beef")
        self.assertEqual(set(doc["_attachments"]), {"hello.txt"})
        self.assertEqual(
            doc["_attachments"]["hello.txt"]["digest"],
            ATTACHMENTS["hello.txt"]["digest"],
        )
        self.assertEqual(summary["multipart_response"]["att"][0]["rev"], "2-beef")
        self.assertEqual(summary["docs_written"], 1)
        self.assertEqual(self.target.bulk_requests, [])

    def test_rejected_attachment_upload_is_recorded(self):
        self.source.add_document("att", "2-beef", _attachments=ATTACHMENTS)
        self.target.reject_ids.add("att")

        summary = self.get_success(self.make_engine().start())

        self.assertIsInstance(
            summary["error_response"]["att"][0], DocumentTransferError
        )
        self.assertEqual(summary["doc_write_failures"], 1)
        self.assertEqual(summary["docs_written"], 0)

    def test_document_error_does_not_stop_run(self):
        add_docs(self.source, 2)
        self.source.transfer_failures["id0"] = [DocumentTransferError("id0", "gone")]

        summary = self.get_success(self.make_engine().start())

        self.assertEqual(self.source.transfer_calls, ["id0", "id1"])
        self.assertEqual(set(self.target.docs), {"id1"})
        self.assertEqual(len(summary["error_response"]["id0"]), 1)
        self.assertEqual(summary["doc_write_failures"], 1)
        self.assertEqual(summary["docs_written"], 1)

    def test_retries_once_after_connection_failure(self):
        add_docs(self.source, 2)
        self.source.transfer_failures["id0"] = [connection_failure()]

        summary = self.get_success(self.make_engine().start(), by=0.001)

        self.assertEqual(self.source.transfer_calls, ["id0", "id0", "id1"])
        self.assertEqual(summary["docs_written"], 2)
        self.assertEqual(summary["error_response"], {})

    def test_retries_once_after_timeout(self):
        add_docs(self.source, 2)
        self.source.transfer_failures["id1"] = [
            RequestTimedOutError("Timeout connecting to remote server")
        ]

        summary = self.get_success(self.make_engine().start(), by=0.001)

        self.assertEqual(self.source.transfer_calls, ["id0", "id1", "id1"])
        self.assertEqual(set(self.target.docs), {"id0", "id1"})
        self.assertEqual(summary["doc_write_failures"], 0)

    def test_second_timeout_aborts(self):
        add_docs(self.source, 1)
        self.source.transfer_failures["id0"] = [
            RequestTimedOutError("Timeout connecting to remote server"),
            RequestTimedOutError("Timeout connecting to remote server"),
        ]

        self.get_failure(self.make_engine().start(), RequestTimedOutError, by=0.001)

        self.assertEqual(self.target.local_docs, {})

    def test_document_error_on_retry_is_recorded(self):
        add_docs(self.source, 2)
        self.source.transfer_failures["id0"] = [
            connection_failure(),
            DocumentTransferError("id0", "gone"),
        ]

        summary = self.get_success(self.make_engine().start(), by=0.001)

        self.assertEqual(set(self.target.docs), {"id1"})
        self.assertEqual(summary["doc_write_failures"], 1)
        self.assertIn("id0", summary["error_response"])

    def test_second_connection_failure_aborts(self):
        add_docs(self.source, 2)
        self.source.transfer_failures["id0"] = [
            connection_failure(),
            connection_failure(),
        ]

        self.get_failure(self.make_engine().start(), RequestSendFailed, by=0.001)

        self.assertEqual(self.source.local_docs, {})
        self.assertEqual(self.target.local_docs, {})
        self.assertEqual(self.target.full_commits, 0)

    def test_bulk_row_errors_are_recorded(self):
        add_docs(self.source, 3)
        self.target.reject_ids.add("id1")

        summary = self.get_success(self.make_engine().start())

        self.assertEqual(summary["docs_written"], 2)
        self.assertEqual(summary["doc_write_failures"], 1)
        self.assertIn("forbidden", str(summary["error_response"]["id1"][0]))

    def test_checkpoint_write_failure_aborts(self):
        add_docs(self.source, 1)
        self.target.put_status = 500

        f = self.get_failure(self.make_engine().start(), HttpResponseException)

        self.assertEqual(f.value.code, 500)
        # the target copy is written first, so the source was never touched
        self.assertEqual(self.source.local_docs, {})
        self.assertEqual(self.target.full_commits, 0)

    def test_missing_target_aborts_before_reading_changes(self):
        add_docs(self.source, 1)
        self.target.exists = False

        self.get_failure(self.make_engine().start(), PeerUnreachableError)

        self.assertEqual(self.source.changes_requests, [])
        self.assertEqual(self.source.local_docs, {})


class ContinuousReplicationTestCase(ReplicationEngineTestCase):
    def test_replicates_stream(self):
        add_docs(self.source, 2)

        summary = self.get_success(self.make_engine(continuous=True).start(), by=2)

        self.assertEqual(set(self.target.docs), {"id0", "id1"})
        self.assertEqual(summary["success_count"], 2)
        self.assertEqual(summary["failure_count"], 0)
        self.assertEqual(summary["docs_written"], 2)
        self.assertEqual(summary["end_last_seq"], 2)
        self.assertEqual(self.source.stream_requests[0]["heartbeat"], 10000)
        self.assertNotIn("timeout", self.source.stream_requests[0])

    def test_timeout_without_heartbeat(self):
        self.get_success(
            self.make_engine(continuous=True, heartbeat=None, timeout=5000).start()
        )
        self.assertEqual(self.source.stream_requests[0]["timeout"], 5000)

    def test_failures_are_counted(self):
        add_docs(self.source, 2)
        self.source.transfer_failures["id0"] = [DocumentTransferError("id0", "gone")]

        summary = self.get_success(self.make_engine(continuous=True).start(), by=2)

        self.assertEqual(summary["success_count"], 1)
        self.assertEqual(summary["failure_count"], 1)
        self.assertIn("id0", summary["error_response"])
        self.assertEqual(set(self.target.docs), {"id1"})

    def test_heartbeats_are_skipped(self):
        add_docs(self.source, 1)
        self.source.stream = FakeChangesStream(
            [b"", change_line(1, "id0", "1-abc0"), b"", b'{"last_seq": 7}']
        )
        self.source.stream.end()

        summary = self.get_success(self.make_engine(continuous=True).start(), by=2)

        self.assertEqual(summary["success_count"], 1)
        self.assertEqual(summary["end_last_seq"], 7)

    def test_cancel(self):
        add_docs(self.source, 1)
        self.source.stream = FakeChangesStream([change_line(1, "id0", "1-abc0")])
        engine = self.make_engine(continuous=True)

        d = defer.ensureDeferred(engine.start())
        self.pump()
        self.assertNoResult(d)
        self.assertIn("id0", self.target.docs)

        self.assertTrue(engine.cancel())
        self.pump()

        summary = self.successResultOf(d)
        self.assertEqual(summary["success_count"], 1)
        self.assertTrue(self.source.stream.closed)
        self.assertIn(self.log_id(), self.target.local_docs)
        self.assertFalse(engine.cancel())

    def test_cancel_without_feed(self):
        self.assertFalse(self.make_engine(continuous=True).cancel())
