# ============================================================================
# backend/app/core/search/search_cascade.py
# ============================================================================
"""
Tiered search over materials and attachments.

A query is run through an ordered list of stages. The first stage whose
count is non-zero produces the page; later stages are not run:

    1. materials_fulltext    materials.tsv @@ plainto_tsquery('simple', unaccent(q))
    2. attachments_fulltext  the same over attachments.extracted_text
    3. titles_fuzzy          material titles and attachment filenames by
                             unaccented substring OR trigram similarity

Stages are plain descriptors (FROM clause, match predicate, rank expression,
ordering) fed through one control loop, so adding a stage means adding a
descriptor, not another code path.

Pagination:
    Every stage paginates on its own with LIMIT/OFFSET. Because the cascade
    is re-derived per request, page 2 can fall through to another stage when
    counts shift between requests. Callers that need stable paging pass back
    ``SearchPage.stage`` as ``stage=`` to pin the stage.

Failures:
    A stage that raises is logged, the session is rolled back and the
    cascade continues. A page with no results and at least one failed stage
    has status "degraded"; a page where every stage ran and matched nothing
    has status "empty".

Usage:
    from app.core.search.search_cascade import get_search_cascade

    page = await get_search_cascade().search("phân số", page=1, per_page=10)
    page = await get_search_cascade().search("phân số", page=2, stage=page.stage)
"""

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import InvalidInputError
from app.core.shared.database_service import DatabaseService, database_service
from app.core.utils.text_utils import make_snippet

logger = logging.getLogger("hoclieu.search")

_NUMERIC_RE = re.compile(r"^\d+$")

MATERIALS = "materials"
ATTACHMENTS = "attachments"


# =============================================================================
# Result types
# =============================================================================


@dataclass
class SearchResult:
    id: int
    title: Optional[str]
    subject_id: Optional[int]
    url: Optional[str]
    content_snippet: str
    source: str
    score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "subject_id": self.subject_id,
            "url": self.url,
            "content_snippet": self.content_snippet,
            "source": self.source,
            "score": self.score,
        }


@dataclass
class SearchPage:
    total: int
    page: int
    per_page: int
    results: List[SearchResult] = field(default_factory=list)
    stage: Optional[str] = None
    failed_stages: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.total > 0:
            return "ok"
        return "degraded" if self.failed_stages else "empty"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "results": [r.to_dict() for r in self.results],
            "stage": self.stage,
            "status": self.status,
        }


@dataclass
class SearchSuggestion:
    id: int
    title: str
    source: str = MATERIALS
    score: Optional[float] = None


@dataclass
class SearchFilters:
    """
    Optional taxonomy filters.

    A purely numeric value is matched against the id column; anything else
    is matched case-insensitively against subjects.title / classes.name.
    """

    subject: Optional[str] = None
    grade: Optional[str] = None

    def __post_init__(self):
        self.subject = str(self.subject).strip() if self.subject is not None else None
        self.grade = str(self.grade).strip() if self.grade is not None else None

    @property
    def is_empty(self) -> bool:
        return not self.subject and not self.grade

    def clauses(self, alias: str, params: Dict[str, Any]) -> List[str]:
        """SQL predicates for the row alias; bind values are added to ``params``."""
        clauses = []
        if self.subject:
            if _NUMERIC_RE.match(self.subject):
                params["subject_id"] = int(self.subject)
                clauses.append(f"{alias}.subject_id = :subject_id")
            else:
                params["subject_pattern"] = f"%{self.subject}%"
                clauses.append(
                    f"EXISTS (SELECT 1 FROM subjects s WHERE s.id = {alias}.subject_id "
                    f"AND s.title ILIKE :subject_pattern)"
                )
        if self.grade:
            if _NUMERIC_RE.match(self.grade):
                params["class_id"] = int(self.grade)
                clauses.append(f"{alias}.class_id = :class_id")
            else:
                params["grade_pattern"] = f"%{self.grade}%"
                clauses.append(
                    f"EXISTS (SELECT 1 FROM classes c WHERE c.id = {alias}.class_id "
                    f"AND c.name ILIKE :grade_pattern)"
                )
        return clauses


# =============================================================================
# Stage descriptors
# =============================================================================


@dataclass(frozen=True)
class SearchStage:
    """
    One ordered search attempt.

    ``relation`` is the FROM clause (aliased as ``alias``), ``columns`` must
    yield id, title, subject_id, url, content and source. ``match`` and
    ``rank`` may reference the bind params :q, :q_like and :threshold.
    """

    name: str
    relation: str
    alias: str
    columns: str
    order_by: str
    match: Optional[str] = None
    rank: Optional[str] = None
    requires_query: bool = True

    def _where(self, filters: SearchFilters, params: Dict[str, Any]) -> str:
        clauses = [self.match] if self.match else []
        clauses.extend(filters.clauses(self.alias, params))
        return " AND ".join(clauses) if clauses else "TRUE"

    def count_sql(self, filters: SearchFilters, params: Dict[str, Any]) -> str:
        return f"SELECT count(*) FROM {self.relation} WHERE {self._where(filters, params)}"

    def page_sql(self, filters: SearchFilters, params: Dict[str, Any]) -> str:
        rank = self.rank or "NULL"
        return (
            f"SELECT {self.columns}, {rank} AS score "
            f"FROM {self.relation} WHERE {self._where(filters, params)} "
            f"ORDER BY {self.order_by} "
            f"LIMIT :limit OFFSET :offset"
        )


_MATERIAL_COLUMNS = (
    "m.id, m.title, m.subject_id, m.url, m.content, 'materials' AS source"
)
_ATTACHMENT_COLUMNS = (
    "a.id, a.filename AS title, a.subject_id, a.storage_key AS url, "
    "a.extracted_text AS content, 'attachments' AS source"
)

_MATERIALS_TSQUERY = "plainto_tsquery('simple', unaccent(:q))"
_ATTACHMENT_TSV = "to_tsvector('simple', coalesce(a.extracted_text, ''))"
_FUZZY_TITLE = "lower(unaccent(coalesce(t.title, '')))"
_FUZZY_QUERY = "lower(unaccent(:q))"

MATERIALS_FULLTEXT = SearchStage(
    name="materials_fulltext",
    relation="materials m",
    alias="m",
    columns=_MATERIAL_COLUMNS,
    match=f"m.tsv @@ {_MATERIALS_TSQUERY}",
    rank=f"ts_rank_cd(m.tsv, {_MATERIALS_TSQUERY})",
    order_by="score DESC, m.created_at DESC",
)

ATTACHMENTS_FULLTEXT = SearchStage(
    name="attachments_fulltext",
    relation="attachments a",
    alias="a",
    columns=_ATTACHMENT_COLUMNS,
    match=f"{_ATTACHMENT_TSV} @@ {_MATERIALS_TSQUERY}",
    rank=f"ts_rank_cd({_ATTACHMENT_TSV}, {_MATERIALS_TSQUERY})",
    order_by="score DESC, a.created_at DESC",
)

TITLES_FUZZY = SearchStage(
    name="titles_fuzzy",
    relation=(
        "(SELECT m.id, m.title, m.subject_id, m.class_id, m.url, m.content, "
        "m.created_at, 'materials' AS source FROM materials m "
        "UNION ALL "
        "SELECT a.id, a.filename, a.subject_id, a.class_id, a.storage_key, "
        "a.extracted_text, a.created_at, 'attachments' FROM attachments a) t"
    ),
    alias="t",
    columns="t.id, t.title, t.subject_id, t.url, t.content, t.source",
    match=(
        f"({_FUZZY_TITLE} LIKE lower(unaccent(:q_like)) ESCAPE '\\' "
        f"OR similarity({_FUZZY_TITLE}, {_FUZZY_QUERY}) > :threshold)"
    ),
    rank=f"similarity({_FUZZY_TITLE}, {_FUZZY_QUERY})",
    order_by="score DESC NULLS LAST, t.created_at DESC",
)

MATERIALS_RECENT = SearchStage(
    name="materials_recent",
    relation="materials m",
    alias="m",
    columns=_MATERIAL_COLUMNS,
    order_by="m.created_at DESC",
    requires_query=False,
)

ATTACHMENTS_RECENT = SearchStage(
    name="attachments_recent",
    relation="attachments a",
    alias="a",
    columns=_ATTACHMENT_COLUMNS,
    order_by="a.created_at DESC",
    requires_query=False,
)

SEARCH_STAGES: Tuple[SearchStage, ...] = (MATERIALS_FULLTEXT, ATTACHMENTS_FULLTEXT, TITLES_FUZZY)
BROWSE_STAGES: Tuple[SearchStage, ...] = (MATERIALS_RECENT, ATTACHMENTS_RECENT)


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# =============================================================================
# Cascade
# =============================================================================


class SearchCascade:
    def __init__(
        self,
        database: Optional[DatabaseService] = None,
        stages: Sequence[SearchStage] = SEARCH_STAGES,
        browse_stages: Sequence[SearchStage] = BROWSE_STAGES,
        fuzzy_threshold: Optional[float] = None,
        snippet_length: Optional[int] = None,
        max_per_page: Optional[int] = None,
    ):
        self._db = database or database_service
        self.stages = tuple(stages)
        self.browse_stages = tuple(browse_stages)
        self.fuzzy_threshold = (
            settings.search_fuzzy_threshold if fuzzy_threshold is None else fuzzy_threshold
        )
        self.snippet_length = snippet_length or settings.search_snippet_length
        self.max_per_page = max_per_page or settings.search_max_per_page

    def _clamp(self, page: int, per_page: int) -> Tuple[int, int]:
        page = max(1, int(page or 1))
        per_page = min(self.max_per_page, max(1, int(per_page or 1)))
        return page, per_page

    def _stage_by_name(self, name: str) -> SearchStage:
        for stage in self.stages + self.browse_stages:
            if stage.name == name:
                return stage
        raise InvalidInputError(f"Unknown search stage: {name}")

    def _map_row(self, row: Dict[str, Any], stage: SearchStage) -> SearchResult:
        score = row.get("score")
        return SearchResult(
            id=row["id"],
            title=row.get("title"),
            subject_id=row.get("subject_id"),
            url=row.get("url"),
            content_snippet=make_snippet(row.get("content"), self.snippet_length),
            source=row.get("source") or stage.name,
            score=float(score) if score is not None else None,
        )

    async def _run_stage(
        self,
        session: AsyncSession,
        stage: SearchStage,
        filters: SearchFilters,
        base_params: Dict[str, Any],
        limit: int,
        offset: int,
    ) -> Tuple[int, List[SearchResult]]:
        params = dict(base_params)
        count_result = await session.execute(text(stage.count_sql(filters, params)), params)
        total = count_result.scalar() or 0
        if total == 0:
            return 0, []

        params.update(limit=limit, offset=offset)
        result = await session.execute(text(stage.page_sql(filters, params)), params)
        rows = result.mappings().all()
        return total, [self._map_row(row, stage) for row in rows]

    async def search(
        self,
        query: Optional[str],
        page: int = 1,
        per_page: int = 10,
        *,
        filters: Optional[SearchFilters] = None,
        stage: Optional[str] = None,
    ) -> SearchPage:
        """
        Run the cascade and return the first non-empty stage's page.

        Args:
            query: Search text; may be empty when filters are given (browse mode)
            page: 1-based page number (values below 1 are treated as 1)
            per_page: Page size, clamped to [1, SEARCH_MAX_PER_PAGE]
            filters: Optional subject/grade filters applied to every stage
            stage: Pin a single stage by name instead of cascading

        Raises:
            InvalidInputError: empty query without filters, or unknown stage
        """
        query = (query or "").strip()
        filters = filters or SearchFilters()
        page, per_page = self._clamp(page, per_page)

        if stage:
            pinned = self._stage_by_name(stage)
            if pinned.requires_query and not query:
                raise InvalidInputError(f"Stage {stage} needs a query")
            stages: Tuple[SearchStage, ...] = (pinned,)
        elif query:
            stages = self.stages
        elif not filters.is_empty:
            stages = self.browse_stages
        else:
            raise InvalidInputError("A search query or at least one filter is required")

        params: Dict[str, Any] = {}
        if query:
            params = {"q": query, "q_like": _like_pattern(query), "threshold": self.fuzzy_threshold}

        offset = (page - 1) * per_page
        failed: List[str] = []

        async with self._db.get_session() as session:
            for candidate in stages:
                try:
                    total, results = await self._run_stage(
                        session, candidate, filters, params, per_page, offset
                    )
                except Exception as e:
                    logger.error(f"Search stage {candidate.name} failed: {e}")
                    await session.rollback()
                    failed.append(candidate.name)
                    continue

                if total > 0:
                    logger.debug(f"Search '{query}' answered by {candidate.name} ({total} hits)")
                    return SearchPage(
                        total=total,
                        page=page,
                        per_page=per_page,
                        results=results,
                        stage=candidate.name,
                        failed_stages=failed,
                    )

        if failed:
            logger.warning(f"Search '{query}' found nothing; failed stages: {', '.join(failed)}")
        return SearchPage(total=0, page=page, per_page=per_page, failed_stages=failed)

    async def suggest(self, prefix: Optional[str], limit: Optional[int] = None) -> List[SearchSuggestion]:
        """
        Title suggestions for a typed prefix.

        Prefix matches (newest first) win; when there are none, titles are
        ranked by trigram similarity instead. Errors degrade to an empty list.
        """
        prefix = (prefix or "").strip()
        if not prefix:
            return []
        limit = max(1, min(limit or settings.suggest_limit, settings.suggest_limit))
        title = "lower(unaccent(coalesce(m.title, '')))"
        params = {
            "prefix": prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%",
            "q": prefix,
            "threshold": self.fuzzy_threshold,
            "limit": limit,
        }
        attempts: List[Tuple[str, Callable[[Any], Optional[float]]]] = [
            (
                f"SELECT m.id, m.title, NULL AS score FROM materials m "
                f"WHERE {title} LIKE lower(unaccent(:prefix)) ESCAPE '\\' "
                f"ORDER BY m.created_at DESC LIMIT :limit",
                lambda score: None,
            ),
            (
                f"SELECT m.id, m.title, similarity({title}, lower(unaccent(:q))) AS score "
                f"FROM materials m "
                f"WHERE similarity({title}, lower(unaccent(:q))) > :threshold "
                f"ORDER BY score DESC, m.created_at DESC LIMIT :limit",
                lambda score: float(score) if score is not None else None,
            ),
        ]

        try:
            async with self._db.get_session() as session:
                for sql, to_score in attempts:
                    result = await session.execute(text(sql), params)
                    rows = result.mappings().all()
                    if rows:
                        return [
                            SearchSuggestion(id=row["id"], title=row["title"], score=to_score(row.get("score")))
                            for row in rows
                        ]
        except Exception as e:
            logger.error(f"Suggest failed for '{prefix}': {e}")
        return []

    async def reindex(self) -> int:
        """
        Recompute materials.tsv for every row (title weight A, content weight B).

        Full-table update; administrative use only.
        """
        sql = text(
            """
            UPDATE materials SET tsv =
                setweight(to_tsvector('simple', unaccent(coalesce(title, ''))), 'A') ||
                setweight(to_tsvector('simple', unaccent(coalesce(content, ''))), 'B')
            """
        )
        async with self._db.get_session() as session:
            result = await session.execute(sql)
            updated = result.rowcount or 0
        logger.info(f"Reindexed {updated} materials")
        return updated


@lru_cache()
def get_search_cascade() -> SearchCascade:
    return SearchCascade()
