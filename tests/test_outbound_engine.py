"""
Tests for outbound generation: quota and deferral, exclusion of targets
with a warm path, retirement and the target-role heuristic.
"""

import unittest
from unittest.mock import MagicMock

from network_fixtures import add_company, add_contact, make_store, make_user

from introengine.outbound_engine import auto_generate_outbound, suggest_target_role
from introengine.relationship_engine import recalculate_intro_opportunities

STRICT_ICP = {
    'target_industries': ['Fintech'],
    'company_size_min': 5000,
    'company_size_max': 10000,
    'target_locations': ['DE'],
    'target_technologies': ['rust'],
}


class OutboundTestCase(unittest.TestCase):

    def setUp(self):
        self.store = make_store()
        self.user = make_user(self.store)
        # ICP scores: Acme 100, Globex 95, Initech 75
        self.acme = add_company(self.store, self.user, "Acme", "acme.io", employee_count=200,
                                country="US", technologies=["python"])
        self.globex = add_company(self.store, self.user, "Globex", "globex.com", employee_count=600,
                                  country="US", technologies=["python"])
        self.initech = add_company(self.store, self.user, "Initech", "initech.com", employee_count=1000,
                                   country="US", technologies=["python"])

    def tearDown(self):
        self.store.close()

    def infer(self):
        return recalculate_intro_opportunities(self.user, self.store, max_workers=1)

    def outbound_targets(self):
        return sorted(o['target_id'] for o in
                      self.store.list_active_opportunities(self.user, types=['OUTBOUND']))


class TestGeneration(OutboundTestCase):

    def test_outbound_for_every_target_without_warm_path(self):
        self.infer()
        counts = auto_generate_outbound(self.user, self.store)
        self.assertEqual(counts, {'created': 3, 'deferred': 0, 'retired': 0})
        for opp in self.store.list_active_opportunities(self.user):
            self.assertEqual(opp['type'], 'OUTBOUND')
            self.assertIsNone(opp['contact_id'])
            self.assertIn("no warm path", opp['path_reason'])

    def test_quota_takes_best_fit_first(self):
        self.infer()
        counts = auto_generate_outbound(self.user, self.store, quota=2)
        self.assertEqual(counts, {'created': 2, 'deferred': 1, 'retired': 0})
        self.assertEqual(self.outbound_targets(), sorted([self.acme, self.globex]))

        counts = auto_generate_outbound(self.user, self.store, quota=2)
        self.assertEqual(counts, {'created': 1, 'deferred': 0, 'retired': 0})
        self.assertEqual(len(self.outbound_targets()), 3)

    def test_rerun_is_idempotent(self):
        self.infer()
        auto_generate_outbound(self.user, self.store)
        counts = auto_generate_outbound(self.user, self.store)
        self.assertEqual(counts, {'created': 0, 'deferred': 0, 'retired': 0})
        self.assertEqual(len(self.store.list_active_opportunities(self.user)), 3)

    def test_targets_with_warm_path_are_skipped(self):
        add_contact(self.store, self.user, "Sam Lee", "Acme", "acme.io")
        self.infer()
        auto_generate_outbound(self.user, self.store)
        self.assertEqual(self.outbound_targets(), sorted([self.globex, self.initech]))

    def test_unscored_targets_are_not_candidates(self):
        """Without an inference run there are no persisted ICP scores."""
        counts = auto_generate_outbound(self.user, self.store)
        self.assertEqual(counts['created'], 0)

    def test_existing_outbound_kept_when_warm_path_appears(self):
        self.infer()
        auto_generate_outbound(self.user, self.store)
        add_contact(self.store, self.user, "Sam Lee", "Acme", "acme.io")
        self.infer()
        counts = auto_generate_outbound(self.user, self.store)
        self.assertEqual(counts['retired'], 0)
        self.assertIn(self.acme, self.outbound_targets())

    def test_drafts_message(self):
        self.infer()
        drafter = MagicMock()
        drafter.draft_outbound.return_value = "Hello Acme"
        auto_generate_outbound(self.user, self.store, quota=1, drafter=drafter)
        company, role, icp = drafter.draft_outbound.call_args[0]
        self.assertEqual(company['id'], self.acme)
        self.assertEqual(role, "CTO / VP Engineering")
        self.assertEqual(icp['key_roles'], ['VP Sales'])
        opp = self.store.list_active_opportunities(self.user)[0]
        self.assertEqual(opp['suggested_message'], "Hello Acme")


class TestRetirement(OutboundTestCase):

    def test_retired_when_target_drops_below_threshold(self):
        self.infer()
        auto_generate_outbound(self.user, self.store)
        self.store.upsert_icp(self.user, STRICT_ICP)
        self.infer()
        counts = auto_generate_outbound(self.user, self.store)
        self.assertEqual(counts, {'created': 0, 'deferred': 0, 'retired': 3})
        for opp in self.store.list_opportunities(self.user):
            self.assertEqual(opp['status'], 'lost')
            self.assertEqual(opp['closed_reason'], 'below_icp_threshold')

    def test_won_target_not_pitched_cold(self):
        add_contact(self.store, self.user, "Sam Lee", "Acme", "acme.io")
        self.infer()
        warm = self.store.list_active_opportunities(self.user, types=['DIRECT'])[0]
        self.store.set_status(self.user, warm['id'], 'won')
        self.infer()
        auto_generate_outbound(self.user, self.store)
        self.assertNotIn(self.acme, self.outbound_targets())

    def test_won_target_not_pitched_after_contact_leaves(self):
        sam = add_contact(self.store, self.user, "Sam Lee", "Acme", "acme.io")
        self.infer()
        warm = self.store.list_active_opportunities(self.user, types=['DIRECT'])[0]
        self.store.set_status(self.user, warm['id'], 'won')
        self.store.soft_delete_contact(self.user, sam)
        self.infer()
        auto_generate_outbound(self.user, self.store)
        self.assertNotIn(self.acme, self.outbound_targets())

    def test_closed_warm_contact_hands_over_to_next_contact(self):
        add_contact(self.store, self.user, "Sam Lee", "Acme", "acme.io", strength=5)
        kim = add_contact(self.store, self.user, "Kim Park", "Acme", "acme.io", strength=3)
        self.infer()
        warm = self.store.list_active_opportunities(self.user, types=['DIRECT'])[0]
        self.store.set_status(self.user, warm['id'], 'lost', closed_reason='not interested')
        self.infer()
        auto_generate_outbound(self.user, self.store)
        acme_opps = [(o['type'], o['contact_id']) for o in self.store.list_active_opportunities(self.user)
                     if o['target_id'] == self.acme]
        self.assertEqual(acme_opps, [('DIRECT', kim)])

    def test_only_closed_paths_still_block_outbound(self):
        add_contact(self.store, self.user, "Sam Lee", "Acme", "acme.io")
        self.infer()
        warm = self.store.list_active_opportunities(self.user, types=['DIRECT'])[0]
        self.store.set_status(self.user, warm['id'], 'lost', closed_reason='not interested')
        self.infer()
        counts = auto_generate_outbound(self.user, self.store)
        self.assertEqual(counts['created'], 2)
        self.assertEqual(self.outbound_targets(), sorted([self.globex, self.initech]))

    def test_user_closed_outbound_not_recreated(self):
        self.infer()
        auto_generate_outbound(self.user, self.store)
        acme_opp = [o for o in self.store.list_active_opportunities(self.user)
                    if o['target_id'] == self.acme][0]
        self.store.set_status(self.user, acme_opp['id'], 'lost')
        counts = auto_generate_outbound(self.user, self.store)
        self.assertEqual(counts['created'], 0)
        self.assertNotIn(self.acme, self.outbound_targets())


class TestTargetRole(unittest.TestCase):

    def test_small_company_founder(self):
        self.assertEqual(suggest_target_role({'employee_count': 30, 'industry': 'SaaS'}), "Founder / CEO")
        self.assertEqual(suggest_target_role({'size_bucket': '11-50'}), "Founder / CEO")

    def test_tech_company_engineering_lead(self):
        self.assertEqual(suggest_target_role({'employee_count': 300, 'industry': 'B2B SaaS'}),
                         "CTO / VP Engineering")
        self.assertEqual(suggest_target_role({'industry': 'Software'}), "CTO / VP Engineering")

    def test_falls_back_to_icp_key_role(self):
        company = {'employee_count': 300, 'industry': 'Logistics'}
        self.assertEqual(suggest_target_role(company, {'key_roles': ['Head of Ops']}), "Head of Ops")
        self.assertEqual(suggest_target_role(company), "HR Manager / Operations Director")


if __name__ == '__main__':
    unittest.main()
