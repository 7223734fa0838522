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

import logging
from typing import Optional

from docrelay.peer.interfaces import PeerClient
from docrelay.replication.engine import ReplicationEngine
from docrelay.types import JsonDict, ReplicationTask
from docrelay.util import Clock

logger = logging.getLogger(__name__)


class Replicator:
    """Runs replications between a source and a target peer.

    The collaborators may be given to the constructor or assigned afterwards;
    they are checked when a replication is started. A new engine is built for
    each run, so one Replicator can run the same task repeatedly, each run
    resuming from the checkpoint of the last.
    """

    def __init__(
        self,
        source: Optional[PeerClient] = None,
        target: Optional[PeerClient] = None,
        task: Optional[ReplicationTask] = None,
        clock: Optional[Clock] = None,
    ):
        self.source = source
        self.target = target
        self.task = task
        self.clock = clock

        self._engine: Optional[ReplicationEngine] = None

    async def start_replication(self) -> JsonDict:
        """Run one replication.

        Returns:
            the run summary.

        Raises:
            ValueError: if the source, target or task has not been set.
        """
        if self.source is None:
            raise ValueError("Source is None.")
        if self.target is None:
            raise ValueError("Target is None.")
        if self.task is None:
            raise ValueError("Task is None.")

        clock = self.clock
        if clock is None:
            from twisted.internet import reactor

            clock = Clock(reactor)

        engine = ReplicationEngine(self.source, self.target, self.task, clock)
        self._engine = engine
        try:
            return await engine.start()
        finally:
            self._engine = None

    def cancel_replication(self) -> bool:
        """Cancel the running continuous replication, if there is one.

        Returns:
            whether a running change feed was closed.
        """
        if self._engine is None:
            return False
        return self._engine.cancel()
