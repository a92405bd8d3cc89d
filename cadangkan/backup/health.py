"""
Backup health scoring.

Scores a database's backup history out of 100:
- success rate (50): share of backups in the last 30 days that completed
- recency (30): how recent the newest backup is, zero after 7 days
- consistency (20): how regular the gaps between recent backups are
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .metadata import STATUS_COMPLETED, now_local
from .storage import BackupListEntry, backup_sort_key


HEALTH_SCORE_HEALTHY = 80.0
HEALTH_SCORE_WARNING = 50.0
HEALTH_ANALYSIS_DAYS = 30
RECENCY_MAX_DAYS = 7

STATUS_HEALTHY = 'healthy'
STATUS_WARNING = 'warning'
STATUS_CRITICAL = 'critical'


@dataclass
class HealthScore:
    """Composite health score with the recommendations that explain it."""
    success_rate: float = 0.0
    recency_score: float = 0.0
    consistency_score: float = 0.0
    total_score: float = 0.0
    recommendations: List[str] = field(default_factory=list)
    recent_backups: List[BackupListEntry] = field(default_factory=list)

    @property
    def status(self) -> str:
        return get_health_status(self.total_score)

    def to_dict(self) -> dict:
        return {
            'success_rate': round(self.success_rate, 2),
            'recency_score': round(self.recency_score, 2),
            'consistency_score': round(self.consistency_score, 2),
            'total_score': round(self.total_score, 2),
            'status': self.status,
            'recommendations': list(self.recommendations),
            'recent_backups': len(self.recent_backups),
        }


def get_health_status(score: float) -> str:
    """Map a total score to 'healthy', 'warning' or 'critical'."""
    if score >= HEALTH_SCORE_HEALTHY:
        return STATUS_HEALTHY
    if score >= HEALTH_SCORE_WARNING:
        return STATUS_WARNING
    return STATUS_CRITICAL


def _days_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 86400.0


def calculate_health_score(
    backups: List[BackupListEntry],
    now: Optional[datetime] = None
) -> HealthScore:
    """
    Score a backup history.

    Args:
        backups: Backup history of one database, including failed records
        now: Reference time (defaults to the current time)

    Returns:
        HealthScore
    """
    now = now or now_local()
    dated = sorted(
        (b for b in backups if b.created_at is not None),
        key=backup_sort_key,
        reverse=True
    )
    recent = [
        b for b in dated
        if _days_between(now, b.created_at) < HEALTH_ANALYSIS_DAYS
    ]

    score = HealthScore(recent_backups=recent)
    if not recent:
        score.recommendations.append(
            'No backups found in the last 30 days. Create your first backup.'
        )
        return score

    successful = sum(
        1 for b in recent
        if b.metadata.status in (STATUS_COMPLETED, '')
    )
    score.success_rate = successful / len(recent) * 50.0
    if successful < len(recent):
        score.recommendations.append(
            'Some backups have failed. Check backup logs for errors.'
        )

    days_since = max(0.0, _days_between(now, dated[0].created_at))
    if days_since <= RECENCY_MAX_DAYS:
        score.recency_score = (RECENCY_MAX_DAYS - days_since) / RECENCY_MAX_DAYS * 30.0
    if days_since > RECENCY_MAX_DAYS:
        score.recommendations.append(
            'Last backup is more than 7 days old. Consider scheduling regular backups.'
        )
    elif days_since > 3:
        score.recommendations.append(
            'Last backup is more than 3 days old. Consider more frequent backups.'
        )

    if len(recent) >= 2:
        intervals = [
            _days_between(recent[i].created_at, recent[i + 1].created_at)
            for i in range(len(recent) - 1)
        ]
        mean = sum(intervals) / len(intervals)
        if mean > 0:
            variance = sum((x - mean) ** 2 for x in intervals) / len(intervals)
            cv = math.sqrt(variance) / mean
            score.consistency_score = (1.0 - min(1.0, cv)) * 20.0
        if score.consistency_score < 10.0:
            score.recommendations.append(
                'Backup intervals are inconsistent. Consider scheduling regular backups.'
            )
    else:
        score.recommendations.append(
            'Only one backup found. Create more backups to assess consistency.'
        )

    score.total_score = score.success_rate + score.recency_score + score.consistency_score

    if score.total_score < HEALTH_SCORE_WARNING:
        score.recommendations.append(
            'Backup health needs attention. Review backup configuration and logs.'
        )
    elif score.total_score < HEALTH_SCORE_HEALTHY:
        score.recommendations.append(
            'Backup health is acceptable but could be improved.'
        )

    return score
