"""
Match Quality Report - aggregates over the match-quality log

Summarizes the rows written at admission time: score distribution, field
coverage, enrichment lift, and per event / per domain / per day breakdowns,
with a short list of capture recommendations.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.orm import sessionmaker

from core.database import session_scope, utcnow
from core.scoring import score_tier
from schemas.tracking import MatchQualityLogModel

logger = structlog.get_logger()

DEFAULT_PERIOD_DAYS = 30
MAX_PERIOD_DAYS = 90
BREAKDOWN_LIMIT = 20

# Report key → log column
COVERAGE_COLUMNS = {
    "em": MatchQualityLogModel.has_email,
    "ph": MatchQualityLogModel.has_phone,
    "fn": MatchQualityLogModel.has_first_name,
    "ln": MatchQualityLogModel.has_last_name,
    "external_id": MatchQualityLogModel.has_external_id,
    "fbp": MatchQualityLogModel.has_browser_id,
    "fbc": MatchQualityLogModel.has_click_id,
    "ip": MatchQualityLogModel.has_client_ip,
    "ua": MatchQualityLogModel.has_client_user_agent,
    "address": MatchQualityLogModel.has_address,
}

# Inclusive score bands, same boundaries as score_tier
DISTRIBUTION_BANDS = (
    ("poor", 0, 20),
    ("fair", 21, 40),
    ("good", 41, 60),
    ("great", 61, 80),
    ("excellent", 81, 100),
)


def _flag(column) -> Any:
    return case((column.is_(True), 1), else_=0)


def _round(value: Optional[float]) -> float:
    return round(float(value or 0), 1)


class MatchQualityReporter:
    """Read-only diagnostics over match_quality_logs"""

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    def report(self, surface_id: Optional[str] = None, days: int = DEFAULT_PERIOD_DAYS) -> Dict[str, Any]:
        """
        Match-quality summary for the last `days` days (capped at 90)

        Args:
            surface_id: restrict to one surface; all surfaces when None
            days: look-back period in days

        Returns:
            Report dict; only `total_events` and `message` when there is no data
        """
        days = max(1, min(int(days), MAX_PERIOD_DAYS))
        since = (self.clock() - timedelta(days=days)).date()

        filters = [MatchQualityLogModel.event_date >= since]
        if surface_id:
            filters.append(MatchQualityLogModel.surface_id == surface_id)

        with session_scope(self.session_factory) as session:
            total = session.execute(
                select(func.count(MatchQualityLogModel.id)).where(*filters)
            ).scalar_one()

            if total == 0:
                return {
                    "total_events": 0,
                    "message": "No match quality data found for the specified period.",
                }

            overall = self._overall(session, filters)
            coverage = self._coverage(session, filters)
            enrichment = self._enrichment(session, filters, total)
            by_event = self._breakdown(session, filters, MatchQualityLogModel.event_name, "event_name")
            by_domain = self._breakdown(
                session,
                filters + [MatchQualityLogModel.source_domain.is_not(None)],
                MatchQualityLogModel.source_domain,
                "domain",
            )
            daily = self._daily(session, filters)

        avg_score = int(round(overall["avg_score"]))
        overall["tier"] = score_tier(avg_score)

        logger.debug("match_quality_report", surface_id=surface_id, days=days, total=total)
        return {
            "period_days": days,
            "total_events": total,
            "overall": overall,
            "field_coverage": coverage,
            "enrichment": enrichment,
            "by_event": by_event,
            "by_domain": by_domain,
            "daily_trend": daily,
            "recommendations": self.recommendations(avg_score, coverage, enrichment["enriched_pct"]),
        }

    # ── Sections ──────────────────────────────────────────────

    def _overall(self, session, filters) -> Dict[str, Any]:
        score = MatchQualityLogModel.score
        bands = [
            func.sum(case((score.between(low, high), 1), else_=0)).label(name)
            for name, low, high in DISTRIBUTION_BANDS
        ]
        row = session.execute(
            select(
                func.avg(score).label("avg_score"),
                func.min(score).label("min_score"),
                func.max(score).label("max_score"),
                *bands,
            ).where(*filters)
        ).one()

        return {
            "avg_score": _round(row.avg_score),
            "min_score": int(row.min_score),
            "max_score": int(row.max_score),
            "distribution": {name: int(getattr(row, name) or 0) for name, _, _ in DISTRIBUTION_BANDS},
        }

    def _coverage(self, session, filters) -> Dict[str, float]:
        row = session.execute(
            select(*[
                (func.avg(_flag(column)) * 100).label(key)
                for key, column in COVERAGE_COLUMNS.items()
            ]).where(*filters)
        ).one()
        return {key: _round(getattr(row, key)) for key in COVERAGE_COLUMNS}

    def _enrichment(self, session, filters, total: int) -> Dict[str, Any]:
        log = MatchQualityLogModel
        enriched = log.was_enriched.is_(True)
        row = session.execute(
            select(
                func.sum(_flag(log.was_enriched)).label("enriched_count"),
                func.avg(case((enriched, log.score - log.score_before_enrichment), else_=None)).label("lift"),
                func.avg(case((enriched, log.score_before_enrichment), else_=None)).label("before"),
                func.avg(case((enriched, log.score), else_=None)).label("after"),
            ).where(*filters)
        ).one()

        enriched_count = int(row.enriched_count or 0)
        return {
            "enriched_events": enriched_count,
            "enriched_pct": int(round(enriched_count * 100 / total)),
            "avg_score_lift": _round(row.lift),
            "avg_score_before": _round(row.before),
            "avg_score_after": _round(row.after),
        }

    def _breakdown(self, session, filters, column, key: str) -> List[Dict[str, Any]]:
        events = func.count(MatchQualityLogModel.id).label("events")
        rows = session.execute(
            select(column, events, func.avg(MatchQualityLogModel.score).label("avg_score"))
            .where(*filters)
            .group_by(column)
            .order_by(events.desc())
            .limit(BREAKDOWN_LIMIT)
        ).all()
        return [
            {
                key: row[0],
                "count": row.events,
                "avg_score": _round(row.avg_score),
                "tier": score_tier(int(round(float(row.avg_score or 0)))),
            }
            for row in rows
        ]

    def _daily(self, session, filters) -> List[Dict[str, Any]]:
        log = MatchQualityLogModel
        rows = session.execute(
            select(
                log.event_date,
                func.count(log.id).label("events"),
                func.avg(log.score).label("avg_score"),
                func.sum(_flag(log.was_enriched)).label("enriched"),
            )
            .where(*filters)
            .group_by(log.event_date)
            .order_by(log.event_date)
        ).all()
        return [
            {
                "date": row.event_date.isoformat(),
                "count": row.events,
                "avg_score": _round(row.avg_score),
                "enriched": int(row.enriched or 0),
            }
            for row in rows
        ]

    # ── Recommendations ───────────────────────────────────────

    @staticmethod
    def recommendations(avg_score: int, coverage: Dict[str, float], enriched_pct: int) -> List[Dict[str, str]]:
        recs = []
        if coverage["em"] < 30:
            recs.append({
                "priority": "high",
                "field": "em",
                "message": f"Email present on {coverage['em']}% of events. Capture it from forms or on login.",
            })
        if coverage["ph"] < 20:
            recs.append({
                "priority": "high",
                "field": "ph",
                "message": f"Phone present on {coverage['ph']}% of events. Capture it at registration or checkout.",
            })
        if coverage["fbp"] < 70:
            recs.append({
                "priority": "medium",
                "field": "fbp",
                "message": f"Browser id cookie present on {coverage['fbp']}% of events. Check first-party cookie capture.",
            })
        if coverage["fn"] < 15 and coverage["ln"] < 15 and avg_score < 60:
            recs.append({
                "priority": "medium",
                "field": "fn/ln",
                "message": "Names are rarely captured. Forward them from forms.",
            })
        if enriched_pct > 0:
            recs.append({
                "priority": "info",
                "field": "enrichment",
                "message": f"Profile enrichment improved {enriched_pct}% of events.",
            })
        if avg_score >= 70 and not recs:
            recs.append({
                "priority": "info",
                "field": "overall",
                "message": "Match quality is strong. Watch the daily trend for regressions.",
            })
        return recs
