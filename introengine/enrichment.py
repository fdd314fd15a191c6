"""
Company enrichment: fills in a target's missing industry and size bucket.
Best-effort. A failing company is logged and skipped; the stage never
aborts the pipeline.
"""

import json
import logging
from typing import Dict, Iterable, Optional

from introengine.errors import ServiceError

logger = logging.getLogger(__name__)

SIZE_BUCKETS = ('1-10', '11-50', '51-200', '201-500', '501-1000',
                '1001-5000', '5001-10000', '10000+')

ENRICH_SYSTEM = ("You classify companies. Reply as "
                 "{\"industry\": \"...\", \"size_bucket\": \"one of "
                 + ", ".join(SIZE_BUCKETS) + "\"}. Use null for anything you do not know.")


class CompletionEnrichmentSource:
    """Asks the completion service for industry and size bucket."""

    def __init__(self, completion):
        self.completion = completion

    def enrich(self, company: Dict) -> Dict:
        """Return {industry?, size_bucket?}; unknown or invalid values are dropped."""
        reply = self.completion.complete(ENRICH_SYSTEM, json.dumps({
            "name": company.get("name"),
            "domain": company.get("domain"),
            "country": company.get("country"),
        }))
        if not isinstance(reply, dict):
            raise ServiceError(f"Malformed enrichment reply for {company.get('name')}")
        result = {}
        industry = reply.get("industry")
        if isinstance(industry, str) and industry.strip() and industry.strip().lower() != "unknown":
            result["industry"] = industry.strip()
        bucket = reply.get("size_bucket")
        if bucket in SIZE_BUCKETS:
            result["size_bucket"] = bucket
        return result


def enrich_companies(user_id: int, store, source,
                     company_ids: Optional[Iterable[int]] = None) -> Dict[str, int]:
    """
    Enrich the user's companies that lack industry or size_bucket.
    Returns {'checked', 'enriched', 'failed'}.
    """
    wanted = set(company_ids) if company_ids is not None else None
    counts = {'checked': 0, 'enriched': 0, 'failed': 0}

    for company in store.get_companies(user_id):
        if wanted is not None and company['id'] not in wanted:
            continue
        if company.get('industry') and company.get('size_bucket'):
            continue
        counts['checked'] += 1
        try:
            fields = source.enrich(company)
            written = store.update_company_enrichment(user_id, company['id'], fields or {})
        except ServiceError as e:
            logger.warning(f"Enrichment skipped for {company['name']}: {e}")
            counts['failed'] += 1
            continue
        except Exception as e:
            logger.error(f"Enrichment of {company['name']} failed unexpectedly: {e}")
            counts['failed'] += 1
            continue
        if written:
            counts['enriched'] += 1
            logger.info(f"Enriched {company['name']}: {', '.join(written)}")

    return counts
