"""
Shared builders for the test suite: an in-memory NetworkStore and helpers
to seed users, targets and contacts.
"""

import sys
import os

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from introengine.network_store import NetworkStore

SAAS_ICP = {
    'target_industries': ['SaaS'],
    'company_size_min': 50,
    'company_size_max': 500,
    'key_roles': ['VP Sales'],
}


def make_store() -> NetworkStore:
    return NetworkStore(":memory:")


def make_user(store, email="seller@example.com", icp=SAAS_ICP, allow_inferred=False) -> int:
    user_id = store.create_user(email, allow_inferred=allow_inferred)
    if icp is not None:
        store.upsert_icp(user_id, icp)
    return user_id


def add_company(store, user_id, name, domain=None, industry='SaaS', employee_count=200, **extra) -> int:
    fields = {'name': name, 'domain': domain, 'industry': industry,
              'employee_count': employee_count}
    fields.update(extra)
    return store.upsert_company(user_id, fields)


def add_contact(store, user_id, name, company=None, domain=None, title=None, past=None,
                strength=3, last_interaction=None, email=None) -> int:
    contact_id = store.upsert_contact(user_id, {
        'name': name,
        'email': email,
        'current_company': company,
        'current_company_domain': domain,
        'current_title': title,
        'past_companies': past or [],
    })
    store.upsert_connection(user_id, contact_id, relationship_strength=strength,
                            last_interaction_date=last_interaction)
    return contact_id
