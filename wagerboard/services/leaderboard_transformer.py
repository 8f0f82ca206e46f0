"""Turn raw affiliate payloads into ranked leaderboards."""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from wagerboard.schemas.leaderboard import (
    BUCKET_FIELDS,
    LeaderboardBuckets,
    LeaderboardEntity,
    LeaderboardEntry,
    LeaderboardMetadata,
    RankedLeaderboard,
    StatsAggregation,
    TimeframeBucket,
    TimeframeField,
    UserRankings,
)
from wagerboard.utils.datetime_helpers import utc_now

logger = logging.getLogger(__name__)

# Upstream timeframe keys in merge priority order; aliases map to the same bucket
TIMEFRAME_KEYS: tuple[tuple[str, ...], ...] = (
    ("all_time", "allTime"),
    ("monthly", "this_month"),
    ("weekly", "this_week"),
    ("today", "daily"),
)


@dataclass
class Recognized:
    entities: list[Any]
    shape: str


@dataclass
class Unrecognized:
    reason: str


ShapeMatch = Union[Recognized, Unrecognized]
ShapeMatcher = Callable[[Any], Optional[ShapeMatch]]


def _bucket_rows(container: dict, aliases: Iterable[str]) -> Optional[list]:
    for alias in aliases:
        bucket = container.get(alias)
        if isinstance(bucket, dict) and isinstance(bucket.get("data"), list):
            return bucket["data"]
        if isinstance(bucket, list):
            return bucket
    return None


EMBEDDED_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
EMBEDDED_ARRAY = re.compile(r"\[.*\]", re.DOTALL)


def _match_raw_text(raw: Any) -> Optional[ShapeMatch]:
    """Recover JSON embedded in a non-JSON body, e.g. an HTML error page."""
    if not isinstance(raw, dict) or not raw.get("parse_error"):
        return None
    text = raw.get("raw_text")
    if not isinstance(text, str):
        return Unrecognized("upstream body was not JSON")

    found = EMBEDDED_OBJECT.search(text)
    if found:
        try:
            embedded = json.loads(found.group(0))
        except ValueError:
            logger.warning("Failed to parse JSON object embedded in raw upstream text")
        else:
            logger.info("Recovered JSON object from raw upstream text")
            return match_shape(embedded)

    found = EMBEDDED_ARRAY.search(text)
    if found:
        try:
            embedded = json.loads(found.group(0))
        except ValueError:
            logger.warning("Failed to parse JSON array embedded in raw upstream text")
        else:
            if isinstance(embedded, list) and embedded:
                logger.info(f"Recovered array of {len(embedded)} rows from raw upstream text")
                return Recognized(embedded, "raw_text_array")

    logger.warning(f"No usable data in raw upstream text: {text[:200]!r}")
    return Unrecognized("upstream body was not JSON")


def _match_timeframe_buckets(raw: Any) -> Optional[ShapeMatch]:
    """{data: {all_time: {data: [...]}, monthly: ..., weekly: ..., today: ...}}"""
    if not isinstance(raw, dict) or not isinstance(raw.get("data"), dict):
        return None
    container = raw["data"]

    found_any = False
    seen: set[str] = set()
    merged: list[Any] = []
    for aliases in TIMEFRAME_KEYS:
        rows = _bucket_rows(container, aliases)
        if rows is None:
            continue
        found_any = True
        for row in rows:
            uid = row.get("uid") if isinstance(row, dict) else None
            if uid is not None:
                uid = str(uid)
                if uid in seen:
                    continue
                seen.add(uid)
            merged.append(row)

    if not found_any:
        return None
    return Recognized(merged, "timeframe_buckets")


def _match_nested_data(raw: Any) -> Optional[ShapeMatch]:
    if isinstance(raw, dict) and isinstance(raw.get("data"), dict):
        inner = raw["data"].get("data")
        if isinstance(inner, list):
            return Recognized(inner, "nested_data")
    return None


def _match_bare_list(raw: Any) -> Optional[ShapeMatch]:
    if isinstance(raw, list):
        return Recognized(raw, "list")
    return None


def _match_wrapped_list(raw: Any) -> Optional[ShapeMatch]:
    if not isinstance(raw, dict):
        return None
    for key in ("results", "data"):
        if isinstance(raw.get(key), list):
            return Recognized(raw[key], f"wrapped_{key}")
    return None


def _match_longest_list(raw: Any) -> Optional[ShapeMatch]:
    if not isinstance(raw, dict):
        return None
    candidates = [value for value in raw.values() if isinstance(value, list)]
    if not candidates:
        return None
    # max() keeps the first of equally long lists
    return Recognized(max(candidates, key=len), "longest_list")


SHAPE_MATCHERS: list[ShapeMatcher] = [
    _match_raw_text,
    _match_timeframe_buckets,
    _match_nested_data,
    _match_bare_list,
    _match_wrapped_list,
    _match_longest_list,
]


def match_shape(raw: Any) -> ShapeMatch:
    """Run the matcher chain and return the first verdict."""
    for matcher in SHAPE_MATCHERS:
        verdict = matcher(raw)
        if verdict is not None:
            return verdict
    return Unrecognized(f"no matcher for payload of type {type(raw).__name__}")


def _to_entities(rows: Iterable[Any]) -> list[LeaderboardEntity]:
    """Validate rows into entities. The first row seen for a uid wins."""
    entities: dict[str, LeaderboardEntity] = {}
    skipped = 0
    duplicates = 0
    for row in rows:
        if not isinstance(row, dict) or row.get("uid") in (None, "") or not row.get("name"):
            skipped += 1
            continue
        try:
            entity = LeaderboardEntity.model_validate(row)
        except ValidationError:
            skipped += 1
            continue
        if entity.uid in entities:
            duplicates += 1
            continue
        entities[entity.uid] = entity
    if skipped:
        logger.debug(f"Skipped {skipped} leaderboard rows without a usable uid or name")
    if duplicates:
        logger.warning(f"Dropped {duplicates} leaderboard rows with a repeated uid")
    return list(entities.values())


def extract_entities(raw: Any) -> list[LeaderboardEntity]:
    """Entities found in any recognized payload shape; empty for unrecognized ones."""
    verdict = match_shape(raw)
    if isinstance(verdict, Unrecognized):
        logger.warning(f"Unrecognized leaderboard payload: {verdict.reason}")
        return []
    return _to_entities(verdict.entities)


def rank(entities: Iterable[LeaderboardEntity], timeframe_field: TimeframeField) -> list[LeaderboardEntry]:
    """
    Order entities by one wagered field, highest first.

    The sort is stable, so ties keep their input order. Tied entries share the
    1-based position of the first entry in their group: 100, 100, 50 ranks as
    1, 1, 3.
    """
    ordered = sorted(entities, key=lambda e: e.wagered.value_for(timeframe_field), reverse=True)

    entries: list[LeaderboardEntry] = []
    previous_value: Optional[float] = None
    current_rank = 0
    for position, entity in enumerate(ordered, start=1):
        value = entity.wagered.value_for(timeframe_field)
        if value != previous_value:
            current_rank = position
            previous_value = value
        entries.append(LeaderboardEntry(uid=entity.uid, name=entity.name, wagered=entity.wagered, rank=current_rank))
    return entries


def empty_leaderboard(status: str = "error") -> RankedLeaderboard:
    return RankedLeaderboard(
        status=status,
        metadata=LeaderboardMetadata(total_users=0, last_updated=utc_now()),
        data=LeaderboardBuckets(),
    )


def build_leaderboard(raw: Any) -> RankedLeaderboard:
    """Rank a raw payload for every timeframe. Never raises."""
    try:
        verdict = match_shape(raw)
        if isinstance(verdict, Unrecognized):
            logger.warning(f"Unrecognized leaderboard payload: {verdict.reason}")
            return empty_leaderboard()

        entities = _to_entities(verdict.entities)
        buckets = {
            bucket: TimeframeBucket(data=rank(entities, timeframe_field))
            for bucket, timeframe_field in BUCKET_FIELDS.items()
        }
        logger.info(f"Built leaderboard from {verdict.shape} payload with {len(entities)} users")
        return RankedLeaderboard(
            status="success",
            metadata=LeaderboardMetadata(total_users=len(entities), last_updated=utc_now()),
            data=LeaderboardBuckets(**buckets),
        )
    except Exception as e:
        logger.error(f"Failed to build leaderboard: {e}", exc_info=True)
        return empty_leaderboard()


def aggregate_stats(leaderboard: RankedLeaderboard) -> StatsAggregation:
    """Sum wagers over unique uids across all buckets."""
    unique: dict[str, LeaderboardEntry] = {}
    for bucket in BUCKET_FIELDS:
        for entry in leaderboard.data.bucket(bucket).data:
            unique.setdefault(entry.uid, entry)

    if not unique:
        return StatsAggregation()

    wagers = [entry.wagered for entry in unique.values()]
    all_time_total = sum(w.all_time for w in wagers)
    return StatsAggregation(
        daily_total=sum(w.today for w in wagers),
        weekly_total=sum(w.this_week for w in wagers),
        monthly_total=sum(w.this_month for w in wagers),
        all_time_total=all_time_total,
        user_count=len(unique),
        average_wager=all_time_total / len(unique),
        top_wager=max(w.all_time for w in wagers),
    )


def top_performers(leaderboard: RankedLeaderboard, limit: int = 3) -> dict[str, list[LeaderboardEntry]]:
    """The first ``limit`` entries of each bucket."""
    return {
        bucket: leaderboard.data.bucket(bucket).data[:max(0, limit)]
        for bucket in BUCKET_FIELDS
    }


def find_user_rankings(leaderboard: RankedLeaderboard, uid: str) -> UserRankings:
    """Rank of ``uid`` in each bucket, ``None`` where the uid does not appear."""
    ranks: dict[str, Optional[int]] = {}
    for bucket in BUCKET_FIELDS:
        ranks[bucket] = next(
            (entry.rank for entry in leaderboard.data.bucket(bucket).data if entry.uid == uid),
            None,
        )
    return UserRankings(uid=uid, **ranks)
