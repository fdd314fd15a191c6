"""
Tests for user-initiated actions: requesting intros, status updates and listings.
"""

import unittest
from datetime import datetime

from network_fixtures import add_company, add_contact, make_store, make_user

from introengine.errors import NotFoundError, ValidationError
from introengine.opportunity_actions import (list_ranked_opportunities,
                                             list_stale_opportunities,
                                             request_intro, update_status)


class ActionsTestCase(unittest.TestCase):

    def setUp(self):
        self.store = make_store()
        self.user = make_user(self.store)
        self.acme = add_company(self.store, self.user, "Acme", "acme.io")
        self.globex = add_company(self.store, self.user, "Globex", "globex.com")
        self.sam = add_contact(self.store, self.user, "Sam Lee", "Acme", "acme.io")
        self.direct, _ = self.store.upsert_opportunity((self.user, self.acme, self.sam), {'type': 'DIRECT'})
        self.outbound, _ = self.store.upsert_opportunity((self.user, self.globex, None), {'type': 'OUTBOUND'})

    def tearDown(self):
        self.store.close()


class TestRequestIntro(ActionsTestCase):

    def test_moves_to_intro_requested(self):
        opp = request_intro(self.user, self.direct, self.store)
        self.assertEqual(opp['status'], 'intro_requested')
        self.assertIsNotNone(opp['last_action_at'])

    def test_outbound_has_no_bridge(self):
        with self.assertRaises(ValidationError):
            request_intro(self.user, self.outbound, self.store)

    def test_other_users_opportunity(self):
        other = make_user(self.store, "other@example.com")
        with self.assertRaises(NotFoundError):
            request_intro(other, self.direct, self.store)

    def test_cannot_request_after_meeting(self):
        update_status(self.user, self.direct, 'meeting_booked', self.store)
        with self.assertRaises(ValidationError):
            request_intro(self.user, self.direct, self.store)


class TestUpdateStatus(ActionsTestCase):

    def test_forward_move(self):
        self.assertEqual(update_status(self.user, self.direct, 'contacted', self.store)['status'], 'contacted')

    def test_legacy_values(self):
        self.assertEqual(update_status(self.user, self.direct, 'in_progress', self.store)['status'], 'contacted')
        opp = update_status(self.user, self.direct, 'closed', self.store, reason='went with a competitor')
        self.assertEqual(opp['status'], 'lost')
        self.assertEqual(opp['closed_reason'], 'went with a competitor')
        self.assertEqual(opp['is_active'], 0)

    def test_backward_move_rejected(self):
        update_status(self.user, self.direct, 'demo_scheduled', self.store)
        with self.assertRaises(ValidationError):
            update_status(self.user, self.direct, 'contacted', self.store)

    def test_reason_only_when_closing(self):
        with self.assertRaises(ValidationError):
            update_status(self.user, self.direct, 'contacted', self.store, reason='because')

    def test_unknown_status(self):
        with self.assertRaises(ValidationError):
            update_status(self.user, self.direct, 'paused', self.store)

    def test_won_is_final(self):
        update_status(self.user, self.direct, 'won', self.store)
        with self.assertRaises(ValidationError):
            update_status(self.user, self.direct, 'lost', self.store)


class TestListings(ActionsTestCase):

    def _score(self, opp_id, total):
        self.store.update_scores(self.user, opp_id, {'industry_fit': 0, 'buying_signal': 0,
                                                     'intro_strength': 0, 'lead_potential': 0,
                                                     'total': total})

    def test_ranked_by_total(self):
        self._score(self.direct, 40)
        self._score(self.outbound, 70)
        ranked = list_ranked_opportunities(self.user, self.store)
        self.assertEqual([o['id'] for o in ranked], [self.outbound, self.direct])
        self.assertEqual(ranked[0]['target_name'], 'Globex')
        self.assertEqual(ranked[1]['contact_name'], 'Sam Lee')

    def test_unscored_last_and_closed_hidden(self):
        self._score(self.direct, 40)
        ranked = list_ranked_opportunities(self.user, self.store)
        self.assertEqual([o['id'] for o in ranked], [self.direct, self.outbound])
        update_status(self.user, self.direct, 'lost', self.store)
        self.assertEqual([o['id'] for o in list_ranked_opportunities(self.user, self.store)], [self.outbound])
        self.assertEqual(len(list_ranked_opportunities(self.user, self.store, include_closed=True)), 2)

    def test_stale(self):
        self.store.conn.execute("UPDATE opportunities SET status_changed_at = ? WHERE id = ?",
                                ('2026-03-01 00:00:00', self.direct))
        self.store.conn.execute("UPDATE opportunities SET status_changed_at = ? WHERE id = ?",
                                ('2026-03-09 00:00:00', self.outbound))
        stale = list_stale_opportunities(self.user, self.store, days=3, now=datetime(2026, 3, 10))
        self.assertEqual([o['id'] for o in stale], [self.direct])
        self.assertEqual(stale[0]['days_in_status'], 9)


if __name__ == '__main__':
    unittest.main()
