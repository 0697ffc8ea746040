"""Round-based feed adapter.

Source: an aggregator contract exposing ``latestRoundData()`` and
``getRoundData(roundId)``, both returning
``(roundId, answer, startedAt, updatedAt, answeredInRound)``.
Typical precision: 8 decimals.

A reading is valid only if its round is complete (the answer was computed in
the round being reported), the answer is positive and the update timestamp is
set. The heartbeat check is applied on top of that by :meth:`BaseAdapter.read`.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .base import (
    BaseAdapter,
    MalformedError,
    NoDataError,
    PriceReading,
    SourceError,
    SourceType,
    register_adapter,
)

logger = logging.getLogger(__name__)

RoundData = tuple[int, int, int, int, int]


class RoundFeedApi(Protocol):
    """Capability client for a round-based feed."""

    def latest_round_data(self) -> RoundData:
        ...

    def get_round_data(self, round_id: int) -> RoundData:
        ...


@register_adapter
class RoundFeedAdapter(BaseAdapter):
    """Adapter for round-based feeds with completeness validation."""

    source_type = SourceType.ROUND_FEED

    client: RoundFeedApi

    async def _read(self) -> PriceReading:
        round_data = await self._call(self.client.latest_round_data)
        return self._validate_round(round_data)

    async def latest_round_id(self) -> int:
        """Get the id of the most recent round."""
        round_data = await self._call(self.client.latest_round_data)
        return self._unpack(round_data)[0]

    async def round_data(self, round_id: int) -> PriceReading:
        """Get the validated reading of a historical round.

        No freshness check is applied to historical rounds.

        :param round_id: Round to read.
        :raises SourceError: If the round is incomplete or invalid.
        """
        round_data = await self._call(self.client.get_round_data, round_id)
        return self._validate_round(round_data)

    async def recent_values(self, count: int) -> list[PriceReading]:
        """Get up to ``count`` valid readings, newest first.

        Walks back from the latest round, skipping rounds that fail
        validation. At most ``2 * count`` rounds are inspected.

        :param count: Maximum number of readings to return.
        :returns: Valid readings ordered from newest to oldest.
        """
        if count <= 0:
            return []

        round_id = await self.latest_round_id()
        readings: list[PriceReading] = []
        attempts = 0
        while round_id > 0 and len(readings) < count and attempts < 2 * count:
            attempts += 1
            try:
                readings.append(await self.round_data(round_id))
            except SourceError as e:
                logger.debug(f"[{self.handle}] Skipping round {round_id}: {e}")
            round_id -= 1
        return readings

    @staticmethod
    def _unpack(round_data: RoundData) -> RoundData:
        try:
            round_id, answer, started_at, updated_at, answered_in_round = round_data
            return (
                int(round_id),
                int(answer),
                int(started_at),
                int(updated_at),
                int(answered_in_round),
            )
        except (TypeError, ValueError) as e:
            raise MalformedError(f"Unexpected round data {round_data!r}: {e}") from e

    def _validate_round(self, round_data: RoundData) -> PriceReading:
        round_id, answer, _, updated_at, answered_in_round = self._unpack(round_data)

        if updated_at == 0:
            raise NoDataError(f"Round {round_id} not complete")
        if answered_in_round != round_id:
            raise NoDataError(
                f"Round {round_id} answered in round {answered_in_round}"
            )
        if answer <= 0:
            raise MalformedError(f"Non-positive answer {answer} in round {round_id}")

        return self._reading(answer, updated_at)
