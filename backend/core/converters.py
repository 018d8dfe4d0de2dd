from typing import Dict

from counting.accounting import KegAccounting
from counting.models import Count, CountSession


def session_to_schema(session: CountSession) -> Dict:
    """Convert a domain session to a SessionRead dict"""
    return {
        "id": session.id,
        "actor_id": session.actor_id,
        "zone_id": session.zone_id,
        "mode_tag": session.mode_tag.value,
        "status": session.status.value,
        "started_at": session.started_at,
        "completed_at": session.completed_at,
        "cancelled_at": session.cancelled_at,
    }


def count_to_schema(count: Count) -> Dict:
    return {
        "session_id": count.session_id,
        "product_id": count.product_id,
        "backup_units": count.backup_units,
        "partial_fraction": count.partial_fraction,
        "expected_units": count.expected_units,
        "observed_at": count.observed_at,
        "is_manual_estimate": count.is_manual_estimate,
        "revision": count.revision,
    }


def keg_summary_to_schema(acct: KegAccounting) -> Dict:
    return {
        "product_id": acct.product_id,
        "tapped": [
            {
                "keg_id": t.keg_id,
                "tap_id": t.tap_id,
                "fill_fraction": t.fill_fraction,
                "needs_manual_entry": not t.observed,
            }
            for t in acct.tapped
        ],
        "on_deck_count": acct.on_deck_count,
        "total_keg_equivalent": acct.keg_equivalent,
    }
