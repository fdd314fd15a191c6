"""
Network graph for IntroEngine.
Custom directed weighted graph (no networkx dependency) holding one user's
network: the user node, contact nodes and company nodes.

Edges:
    user_<id>    -> contact_<id>   weight = relationship_strength (1-5)
    contact_<id> -> company_<key>  relationship = works_at | worked_at
"""

import logging
import re
from collections import defaultdict
from datetime import date, datetime
from typing import List, Optional

logger = logging.getLogger(__name__)


# ============================================================
# LIGHTWEIGHT DIRECTED GRAPH
# ============================================================

class NetworkGraph:
    """Minimal directed weighted graph."""

    def __init__(self):
        self.nodes = {}         # node_key -> {attr dict}
        self.adj = defaultdict(dict)   # src -> {tgt -> {edge attrs}}
        self.pred = defaultdict(dict)  # tgt -> {src -> {edge attrs}}
        self.user_id = None
        self.allow_inferred = False
        self.work_history = []

    def add_node(self, key: str, **attrs):
        if key in self.nodes:
            self.nodes[key].update(attrs)
        else:
            self.nodes[key] = attrs

    def add_edge(self, src: str, tgt: str, **attrs):
        self.adj[src][tgt] = attrs
        self.pred[tgt][src] = attrs

    def out_edges(self, node: str):
        """Yield (src, tgt, edge_data) for outgoing edges."""
        for tgt, data in self.adj.get(node, {}).items():
            yield node, tgt, data

    def in_edges(self, node: str):
        """Yield (src, tgt, edge_data) for incoming edges."""
        for src, data in self.pred.get(node, {}).items():
            yield src, node, data

    def has_node(self, key: str) -> bool:
        return key in self.nodes

    def has_edge(self, src: str, tgt: str) -> bool:
        return tgt in self.adj.get(src, {})

    def edge_data(self, src: str, tgt: str) -> dict:
        return self.adj.get(src, {}).get(tgt, {})

    def number_of_nodes(self) -> int:
        return len(self.nodes)

    def number_of_edges(self) -> int:
        return sum(len(targets) for targets in self.adj.values())

    def contacts(self) -> List[str]:
        return [k for k, v in self.nodes.items() if v.get("entity_type") == "contact"]


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def _node_key(entity_type: str, entity_id) -> str:
    return f"{entity_type}_{entity_id}"


_COMPANY_SUFFIXES = {
    "inc", "incorporated", "llc", "ltd", "limited", "corp", "corporation",
    "co", "company", "gmbh", "ag", "sa", "plc", "bv", "srl",
}


def normalize_domain(domain: Optional[str]) -> Optional[str]:
    """'https://www.Acme.io/about' -> 'acme.io'. Empty input gives None."""
    if not domain:
        return None
    value = str(domain).strip().lower()
    value = re.sub(r"^[a-z]+://", "", value)
    value = value.split("/")[0].split("?")[0].split(":")[0]
    if value.startswith("www."):
        value = value[4:]
    value = value.strip(".")
    return value or None


def normalize_company_name(name: Optional[str]) -> Optional[str]:
    """Lowercase, strip punctuation and legal suffixes ('Acme, Inc.' -> 'acme')."""
    if not name:
        return None
    value = re.sub(r"[^\w\s]", " ", str(name).lower())
    words = [w for w in value.split() if w]
    while len(words) > 1 and words[-1] in _COMPANY_SUFFIXES:
        words.pop()
    return " ".join(words) or None


def company_keys(name: Optional[str] = None, domain: Optional[str] = None) -> List[str]:
    """Every key a company can be matched by (domain and name)."""
    keys = []
    dom = normalize_domain(domain)
    if dom:
        keys.append(_node_key("company", dom))
    norm = normalize_company_name(name)
    if norm:
        keys.append(_node_key("company", norm))
    return keys


def same_company(name_a, domain_a, name_b, domain_b) -> bool:
    """Domains decide when both sides have one; otherwise compare normalized names."""
    dom_a, dom_b = normalize_domain(domain_a), normalize_domain(domain_b)
    if dom_a and dom_b:
        return dom_a == dom_b
    norm_a, norm_b = normalize_company_name(name_a), normalize_company_name(name_b)
    return bool(norm_a) and norm_a == norm_b


def parse_date(value) -> Optional[date]:
    """Accept 'YYYY-MM-DD', 'YYYY-MM-DD HH:MM:SS', date or datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


# ============================================================
# GRAPH CONSTRUCTION
# ============================================================

def build_network_graph(store, user_id: int) -> NetworkGraph:
    """
    Read one user's contacts, connections, work history and targets from the
    store and build the network graph. Soft-deleted contacts are left out, so
    every path through them disappears.
    """
    G = NetworkGraph()
    user = store.get_user(user_id)
    G.user_id = user_id
    G.allow_inferred = bool(user.get("allow_inferred"))
    G.work_history = store.get_work_history(user_id)

    user_node = _node_key("user", user_id)
    G.add_node(user_node, entity_type="user", entity_id=user_id)

    connections = {c["contact_id"]: c for c in store.get_connections(user_id)}

    # Targets first so employer nodes pick up their attributes
    for company in store.get_companies(user_id):
        for key in company_keys(company["name"], company.get("domain")):
            G.add_node(key, entity_type="company", target_id=company["id"],
                       name=company["name"], industry=company.get("industry"),
                       size_bucket=company.get("size_bucket"),
                       country=company.get("country"))

    for contact in store.get_contacts(user_id):
        node = _node_key("contact", contact["id"])
        conn = connections.get(contact["id"], {})
        G.add_node(node, entity_type="contact", entity_id=contact["id"],
                   name=contact["name"], title=contact.get("current_title"),
                   created_at=contact.get("created_at"),
                   strength=conn.get("relationship_strength") or 1,
                   last_interaction_date=conn.get("last_interaction_date"))
        G.add_edge(user_node, node, weight=conn.get("relationship_strength") or 1,
                   connection_type=conn.get("connection_type") or "other")

        current = company_keys(contact.get("current_company"), contact.get("current_company_domain"))
        for key in current:
            if not G.has_node(key):
                G.add_node(key, entity_type="company", name=contact.get("current_company"))
            G.add_edge(node, key, relationship="works_at", title=contact.get("current_title"),
                       company_name=contact.get("current_company"),
                       company_domain=contact.get("current_company_domain"))

        for past in contact.get("past_companies") or []:
            for key in company_keys(past.get("company"), past.get("domain")):
                if key in current:
                    continue
                if not G.has_node(key):
                    G.add_node(key, entity_type="company", name=past.get("company"))
                G.add_edge(node, key, relationship="worked_at", title=past.get("title"),
                           end_year=past.get("end_year"), company_name=past.get("company"),
                           company_domain=past.get("domain"))

    logger.debug(f"Network graph for user {user_id}: {G.number_of_nodes()} nodes, "
                 f"{G.number_of_edges()} edges")
    return G
