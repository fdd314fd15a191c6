"""
Outreach copy drafting for newly created opportunities.
A failed or malformed completion leaves the message empty.
"""

import json
import logging
from typing import Dict, Optional

from introengine.errors import ServiceError

logger = logging.getLogger(__name__)

INTRO_SYSTEM = ("You draft short, friendly messages asking a contact for a warm "
                "introduction to a company. Reply as {\"message\": \"...\"}.")
OUTBOUND_SYSTEM = ("You draft a short first-touch outbound message to a company with "
                   "no mutual connection. Reply as {\"message\": \"...\"}.")


class OutreachDrafter:
    """Wraps a completion service; every draft_* call returns a string, possibly empty."""

    def __init__(self, completion):
        self.completion = completion

    def _draft(self, system_prompt: str, payload: Dict, label: str) -> str:
        try:
            reply = self.completion.complete(system_prompt, json.dumps(payload, default=str))
        except ServiceError as e:
            logger.warning(f"Drafting {label} failed: {e}")
            return ""
        except Exception as e:
            logger.error(f"Drafting {label} raised unexpectedly: {e}")
            return ""
        if not isinstance(reply, dict):
            logger.warning(f"Drafting {label}: malformed reply")
            return ""
        message = reply.get("message")
        if not isinstance(message, str):
            logger.warning(f"Drafting {label}: reply has no message")
            return ""
        return message.strip()

    def draft_intro(self, contact: Dict, company: Dict, path: Dict,
                    icp: Optional[Dict] = None) -> str:
        payload = {
            "bridge_contact": {"name": contact.get("name"), "title": contact.get("current_title"),
                               "company": contact.get("current_company")},
            "target_company": {"name": company.get("name"), "industry": company.get("industry")},
            "path_type": path.get("type"),
            "why": path.get("reason"),
            "pain_points": (icp or {}).get("pain_points") or [],
        }
        return self._draft(INTRO_SYSTEM, payload, f"intro to {company.get('name')}")

    def draft_outbound(self, company: Dict, target_role: str, icp: Optional[Dict] = None) -> str:
        payload = {
            "target_company": {"name": company.get("name"), "industry": company.get("industry"),
                               "size": company.get("size_bucket") or company.get("employee_count")},
            "target_role": target_role,
            "pain_points": (icp or {}).get("pain_points") or [],
        }
        return self._draft(OUTBOUND_SYSTEM, payload, f"outbound to {company.get('name')}")
