"""
Unit tests for graph_engine: the NetworkGraph structure, name/domain
normalization and graph construction from the store.
"""

import unittest

from network_fixtures import add_company, add_contact, make_store, make_user

from introengine.graph_engine import (NetworkGraph, _node_key,
                                      build_network_graph, company_keys,
                                      normalize_company_name,
                                      normalize_domain, parse_date,
                                      same_company)


class TestNetworkGraph(unittest.TestCase):

    def test_add_node_merges_attributes(self):
        G = NetworkGraph()
        G.add_node("company_acme", name="Acme")
        G.add_node("company_acme", industry="SaaS")
        self.assertEqual(G.nodes["company_acme"], {"name": "Acme", "industry": "SaaS"})

    def test_edges(self):
        G = NetworkGraph()
        G.add_node("user_1", entity_type="user")
        G.add_node("contact_1", entity_type="contact")
        G.add_edge("user_1", "contact_1", weight=4)
        self.assertTrue(G.has_edge("user_1", "contact_1"))
        self.assertFalse(G.has_edge("contact_1", "user_1"))
        self.assertEqual(G.edge_data("user_1", "contact_1"), {"weight": 4})
        self.assertEqual(list(G.out_edges("user_1")), [("user_1", "contact_1", {"weight": 4})])
        self.assertEqual(list(G.in_edges("contact_1")), [("user_1", "contact_1", {"weight": 4})])
        self.assertEqual(G.number_of_nodes(), 2)
        self.assertEqual(G.number_of_edges(), 1)
        self.assertEqual(G.contacts(), ["contact_1"])

    def test_node_key(self):
        self.assertEqual(_node_key("contact", 7), "contact_7")


class TestNormalization(unittest.TestCase):

    def test_normalize_domain(self):
        self.assertEqual(normalize_domain("https://www.Acme.io/about?x=1"), "acme.io")
        self.assertEqual(normalize_domain("acme.io:443"), "acme.io")
        self.assertIsNone(normalize_domain(""))
        self.assertIsNone(normalize_domain(None))

    def test_normalize_company_name(self):
        self.assertEqual(normalize_company_name("Acme, Inc."), "acme")
        self.assertEqual(normalize_company_name("ACME Corp"), "acme")
        self.assertEqual(normalize_company_name("The Company"), "the")
        # a lone suffix word is kept
        self.assertEqual(normalize_company_name("Company"), "company")

    def test_company_keys(self):
        self.assertEqual(company_keys("Acme Inc", "acme.io"), ["company_acme.io", "company_acme"])
        self.assertEqual(company_keys(None, None), [])

    def test_same_company_domains_decide(self):
        self.assertTrue(same_company("Acme", "acme.io", "Acme Holdings", "www.acme.io"))
        self.assertFalse(same_company("Acme", "acme.io", "Acme", "acme.de"))

    def test_same_company_falls_back_to_name(self):
        self.assertTrue(same_company("Acme, Inc.", None, "acme", "acme.io"))
        self.assertFalse(same_company(None, None, None, None))

    def test_parse_date(self):
        self.assertEqual(parse_date("2026-01-15 10:00:00").isoformat(), "2026-01-15")
        self.assertIsNone(parse_date("January"))
        self.assertIsNone(parse_date(None))


class TestBuildNetworkGraph(unittest.TestCase):

    def setUp(self):
        self.store = make_store()
        self.user = make_user(self.store)
        self.acme = add_company(self.store, self.user, "Acme", "acme.io", country="US")
        self.sam = add_contact(self.store, self.user, "Sam Lee", "Acme", "acme.io", title="CTO",
                               past=[{'company': 'Globex', 'title': 'Engineer', 'end_year': 2020}],
                               strength=4, last_interaction="2026-02-01")

    def tearDown(self):
        self.store.close()

    def test_nodes_and_edges(self):
        G = build_network_graph(self.store, self.user)
        contact = _node_key("contact", self.sam)
        self.assertTrue(G.has_edge(_node_key("user", self.user), contact))
        self.assertEqual(G.nodes[contact]["strength"], 4)
        self.assertEqual(G.edge_data(contact, "company_acme.io")["relationship"], "works_at")
        self.assertEqual(G.edge_data(contact, "company_acme")["relationship"], "works_at")
        self.assertEqual(G.edge_data(contact, "company_globex")["relationship"], "worked_at")
        self.assertEqual(G.edge_data(contact, "company_globex")["end_year"], 2020)

    def test_target_attributes_on_company_nodes(self):
        G = build_network_graph(self.store, self.user)
        self.assertEqual(G.nodes["company_acme.io"]["target_id"], self.acme)
        self.assertEqual(G.nodes["company_acme"]["country"], "US")

    def test_deleted_contacts_left_out(self):
        self.store.soft_delete_contact(self.user, self.sam)
        G = build_network_graph(self.store, self.user)
        self.assertFalse(G.has_node(_node_key("contact", self.sam)))
        self.assertEqual(G.contacts(), [])

    def test_account_settings_carried(self):
        self.store.set_allow_inferred(self.user, True)
        self.store.add_work_history(self.user, {'company_name': 'Initech', 'company_industry': 'SaaS'})
        G = build_network_graph(self.store, self.user)
        self.assertTrue(G.allow_inferred)
        self.assertEqual(G.work_history[0]["company_name"], "Initech")

    def test_contact_without_connection_defaults_to_weakest(self):
        loner = self.store.upsert_contact(self.user, {'name': 'Pat', 'current_company': 'Acme'})
        G = build_network_graph(self.store, self.user)
        self.assertEqual(G.nodes[_node_key("contact", loner)]["strength"], 1)


if __name__ == '__main__':
    unittest.main()
