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
from twisted.internet.defer import ensureDeferred

from docrelay.replication.changes import ChangeFeed, get_mapping, merge_revision_diff

from tests import unittest
from tests.test_utils.fake_peer import FakeChangesStream, change_line


class GetMappingTestCase(unittest.TestCase):
    def test_normal_feed(self):
        changes = {
            "results": [{"seq": 78, "id": "d1", "changes": [{"rev": "3-x"}]}],
            "last_seq": 78,
        }
        self.assertEqual(get_mapping(changes), {"d1": ["3-x"]})

    def test_continuous_feed(self):
        payload = '{"seq":78,"id":"d1","changes":[{"rev":"3-x"}]}\n\n{"last_seq":78}\n'
        self.assertEqual(get_mapping(payload), {"d1": ["3-x"]})
        self.assertEqual(get_mapping(payload.encode("utf-8")), {"d1": ["3-x"]})

    def test_conflicting_revisions(self):
        changes = {
            "results": [
                {"seq": 1, "id": "d1", "changes": [{"rev": "2-a"}, {"rev": "2-b"}]},
                {"seq": 2, "id": "d2", "changes": []},
            ]
        }
        self.assertEqual(get_mapping(changes), {"d1": ["2-a", "2-b"], "d2": []})


class MergeRevisionDiffTestCase(unittest.TestCase):
    def test_all_docs_merges_lists(self):
        accumulated = {"d1": {"missing": ["2-a"], "possible_ancestors": ["1-a"]}}
        diff = {
            "d1": {"missing": ["2-a", "2-b"], "possible_ancestors": ["1-b"]},
            "d2": {"missing": ["1-c"]},
        }

        merge_revision_diff(accumulated, diff, "all_docs")

        self.assertEqual(
            accumulated,
            {
                "d1": {"missing": ["2-a", "2-b"], "possible_ancestors": ["1-a", "1-b"]},
                "d2": {"missing": ["1-c"], "possible_ancestors": []},
            },
        )

    def test_main_only_replaces(self):
        accumulated = {"d1": {"missing": ["2-a"]}}
        merge_revision_diff(accumulated, {"d1": {"missing": ["3-a"]}}, "main_only")
        self.assertEqual(accumulated, {"d1": {"missing": ["3-a"]}})


class ChangeFeedTestCase(unittest.ReactorTestCase):
    def read_all(self, feed: ChangeFeed, by: float = 0.0) -> list:
        async def collect():
            return [row async for row in feed]

        return self.get_success(collect(), by=by)

    def test_yields_changes(self):
        stream = FakeChangesStream(
            [change_line(1, "a", "1-a"), change_line(2, "b", "1-b"), None]
        )
        feed = ChangeFeed(stream, self.clock)

        rows = self.read_all(feed)

        self.assertEqual([row["id"] for row in rows], ["a", "b"])
        self.assertEqual(feed.last_seq, 2)

    def test_pauses_on_heartbeat(self):
        stream = FakeChangesStream([b"", change_line(1, "a", "1-a"), None])
        feed = ChangeFeed(stream, self.clock, pause=2.0)

        rows = []

        async def read_one():
            rows.append(await feed.__anext__())

        # the heartbeat holds up the next read until the pause is over
        reading = ensureDeferred(read_one())
        self.reactor.advance(1)
        self.assertNoResult(reading)
        self.reactor.advance(1)
        self.successResultOf(reading)
        self.assertEqual(rows[0]["id"], "a")

    def test_records_last_seq_line(self):
        stream = FakeChangesStream(
            [change_line(1, "a", "1-a"), b'{"last_seq":"9-g1"}', None]
        )
        feed = ChangeFeed(stream, self.clock)

        rows = self.read_all(feed, by=2)

        self.assertEqual(len(rows), 1)
        self.assertEqual(feed.last_seq, "9-g1")

    def test_skips_unparseable_lines(self):
        stream = FakeChangesStream([b"{not json", change_line(3, "a", "1-a"), None])
        feed = ChangeFeed(stream, self.clock)

        rows = self.read_all(feed)

        self.assertEqual([row["id"] for row in rows], ["a"])

    def test_close_ends_iteration(self):
        stream = FakeChangesStream([change_line(1, "a", "1-a")])
        feed = ChangeFeed(stream, self.clock)

        rows = []

        async def collect():
            async for row in feed:
                rows.append(row)

        d = ensureDeferred(collect())
        self.pump()
        self.assertNoResult(d)
        self.assertEqual(len(rows), 1)

        feed.close()
        self.successResultOf(d)
        self.assertTrue(stream.closed)
