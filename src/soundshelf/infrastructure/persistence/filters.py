"""Translate smart-playlist FilterExpressions into SQLAlchemy clauses.

Hey future me - this is the ONLY module that knows how a FilterKind maps to SQL. Services
hand over a PlaylistCriteria and get a Select back, they never see column names.
"""

from sqlalchemy import Select, and_, exists, false, func, or_, select, true
from sqlalchemy.sql.elements import ColumnElement

from soundshelf.domain.value_objects import FilterExpression, FilterKind, PlaylistCriteria

from .models import ArtistModel, LibraryMembershipModel, MembershipSourceModel, TrackModel


def _json_list_contains(column: ColumnElement[str | None], value: str) -> ColumnElement[bool]:
    # Genres are JSON text like ["indie rock", "shoegaze"] - match the quoted element
    needle = f'%"{value.lower()}"%'
    return func.lower(func.coalesce(column, "")).like(needle)


def filter_to_clause(expression: FilterExpression) -> ColumnElement[bool]:
    """Translate one filter into a boolean clause.

    The clause expects LibraryMembershipModel, TrackModel and ArtistModel in the FROM list.
    """
    kind = expression.kind
    value = expression.value

    if kind == FilterKind.GENRE:
        return or_(
            _json_list_contains(TrackModel.genres, value),
            _json_list_contains(ArtistModel.genres, value),
        )
    if kind == FilterKind.ARTIST:
        return func.lower(ArtistModel.name) == value.lower()
    if kind == FilterKind.MIN_RATING:
        return LibraryMembershipModel.rating >= float(value)
    if kind == FilterKind.SOURCE:
        return exists().where(
            MembershipSourceModel.membership_id == LibraryMembershipModel.id,
            MembershipSourceModel.source_type == value.value,
        )
    if kind == FilterKind.ADDED_AFTER:
        return LibraryMembershipModel.added_at >= value
    if kind == FilterKind.MIN_PLAY_COUNT:
        return LibraryMembershipModel.total_play_count >= value

    raise ValueError(f"Unsupported filter kind: {kind}")


def criteria_to_clause(criteria: PlaylistCriteria) -> ColumnElement[bool]:
    """Combine all filters with AND (match all) or OR (match any)."""
    if not criteria.filters:
        return true()
    clauses = [filter_to_clause(f) for f in criteria.filters]
    if criteria.match_all:
        return and_(*clauses)
    return or_(false(), *clauses)


def matching_track_ids_query(user_id: str, criteria: PlaylistCriteria) -> Select[tuple[str]]:
    """Build the query returning remote ids of the user's tracks matching the criteria.

    Newest library additions first, so a limit keeps the most recent ones.
    """
    stmt = (
        select(TrackModel.spotify_id)
        .select_from(LibraryMembershipModel)
        .join(TrackModel, TrackModel.id == LibraryMembershipModel.track_id)
        .join(ArtistModel, ArtistModel.id == TrackModel.artist_id)
        .where(LibraryMembershipModel.user_id == user_id)
        .where(criteria_to_clause(criteria))
        .order_by(LibraryMembershipModel.added_at.desc(), TrackModel.spotify_id)
    )
    if criteria.limit is not None:
        stmt = stmt.limit(criteria.limit)
    return stmt
