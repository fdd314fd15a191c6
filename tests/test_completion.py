"""
Tests for the completion service wrapper, outreach drafting and company
enrichment. No network calls: the anthropic client is a MagicMock.
"""

import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import anthropic
import httpx

from network_fixtures import add_company, make_store, make_user

from introengine.completion import AnthropicCompletionService, parse_json_reply
from introengine.drafting import OutreachDrafter
from introengine.enrichment import CompletionEnrichmentSource, enrich_companies
from introengine.errors import ServiceError


def _response(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)],
                           usage=SimpleNamespace(input_tokens=12, output_tokens=30))


class TestParseJsonReply(unittest.TestCase):

    def test_plain_json(self):
        self.assertEqual(parse_json_reply('{"message": "hi"}'), {'message': 'hi'})

    def test_fenced_json(self):
        self.assertEqual(parse_json_reply('```json\n{"message": "hi"}\n```'), {'message': 'hi'})

    def test_invalid(self):
        for text in ("", "   ", "Sure! Here you go", "[1, 2]"):
            with self.assertRaises(ServiceError):
                parse_json_reply(text)


class TestAnthropicCompletionService(unittest.TestCase):

    def test_complete_returns_parsed_reply(self):
        client = MagicMock()
        client.messages.create.return_value = _response('{"message": "hello"}')
        service = AnthropicCompletionService(api_key="test", model="claude-test", client=client)
        self.assertEqual(service.complete("system", "user"), {'message': 'hello'})
        kwargs = client.messages.create.call_args.kwargs
        self.assertEqual(kwargs['model'], "claude-test")
        self.assertEqual(kwargs['messages'], [{"role": "user", "content": "user"}])
        self.assertTrue(kwargs['system'].startswith("system"))

    def test_timeout_becomes_service_error(self):
        client = MagicMock()
        client.messages.create.side_effect = anthropic.APITimeoutError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
        service = AnthropicCompletionService(api_key="test", timeout=5, client=client)
        with self.assertRaises(ServiceError):
            service.complete("system", "user")

    def test_connection_error_becomes_service_error(self):
        client = MagicMock()
        client.messages.create.side_effect = anthropic.APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
        service = AnthropicCompletionService(api_key="test", client=client)
        with self.assertRaises(ServiceError):
            service.complete("system", "user")

    def test_garbage_reply_becomes_service_error(self):
        client = MagicMock()
        client.messages.create.return_value = _response("I cannot help with that.")
        service = AnthropicCompletionService(api_key="test", client=client)
        with self.assertRaises(ServiceError):
            service.complete("system", "user")

    def test_missing_api_key(self):
        service = AnthropicCompletionService(api_key="")
        service._api_key = ""
        with self.assertRaises(ServiceError):
            service.complete("system", "user")


class TestOutreachDrafter(unittest.TestCase):

    def test_intro_draft(self):
        completion = MagicMock()
        completion.complete.return_value = {'message': ' Hi Sam '}
        drafter = OutreachDrafter(completion)
        message = drafter.draft_intro({'name': 'Sam'}, {'name': 'Acme'},
                                      {'type': 'DIRECT', 'reason': 'works there'},
                                      {'pain_points': ['manual reporting']})
        self.assertEqual(message, 'Hi Sam')
        self.assertIn('manual reporting', completion.complete.call_args[0][1])

    def test_failure_gives_empty_string(self):
        completion = MagicMock()
        completion.complete.side_effect = ServiceError("down")
        self.assertEqual(OutreachDrafter(completion).draft_outbound({'name': 'Acme'}, 'CTO'), "")

    def test_reply_without_message(self):
        completion = MagicMock()
        completion.complete.return_value = {'text': 'Hi'}
        self.assertEqual(OutreachDrafter(completion).draft_outbound({'name': 'Acme'}, 'CTO'), "")

    def test_non_dict_reply(self):
        completion = MagicMock()
        completion.complete.return_value = ['Hi']
        self.assertEqual(OutreachDrafter(completion).draft_outbound({'name': 'Acme'}, 'CTO'), "")

    def test_unexpected_error_gives_empty_string(self):
        completion = MagicMock()
        completion.complete.side_effect = TimeoutError("socket timeout")
        self.assertEqual(OutreachDrafter(completion).draft_intro({'name': 'Sam'}, {'name': 'Acme'},
                                                                 {'type': 'DIRECT'}), "")


class TestEnrichment(unittest.TestCase):

    def setUp(self):
        self.store = make_store()
        self.user = make_user(self.store)

    def tearDown(self):
        self.store.close()

    def test_source_drops_invalid_values(self):
        completion = MagicMock()
        completion.complete.return_value = {'industry': 'unknown', 'size_bucket': 'huge'}
        self.assertEqual(CompletionEnrichmentSource(completion).enrich({'name': 'Acme'}), {})
        completion.complete.return_value = {'industry': ' Fintech ', 'size_bucket': '51-200'}
        self.assertEqual(CompletionEnrichmentSource(completion).enrich({'name': 'Acme'}),
                         {'industry': 'Fintech', 'size_bucket': '51-200'})

    def test_enrich_companies_fills_gaps(self):
        bare = add_company(self.store, self.user, "Acme", industry=None, employee_count=None)
        add_company(self.store, self.user, "Globex", industry="SaaS", size_bucket="11-50")
        source = MagicMock()
        source.enrich.return_value = {'industry': 'Fintech', 'size_bucket': '51-200'}
        counts = enrich_companies(self.user, self.store, source)
        self.assertEqual(counts, {'checked': 1, 'enriched': 1, 'failed': 0})
        company = self.store.get_company(self.user, bare)
        self.assertEqual((company['industry'], company['size_bucket']), ('Fintech', '51-200'))

    def test_enrichment_failure_is_counted(self):
        add_company(self.store, self.user, "Acme", industry=None)
        source = MagicMock()
        source.enrich.side_effect = ServiceError("timeout")
        counts = enrich_companies(self.user, self.store, source)
        self.assertEqual(counts, {'checked': 1, 'enriched': 0, 'failed': 1})

    def test_one_company_failing_does_not_stop_the_rest(self):
        alpha = add_company(self.store, self.user, "Alpha", "alpha.io", industry=None)
        beta = add_company(self.store, self.user, "Beta", "beta.io", industry=None)
        source = MagicMock()
        source.enrich.side_effect = [TimeoutError("enrichment timed out"),
                                     {'industry': 'SaaS', 'size_bucket': '51-200'}]
        counts = enrich_companies(self.user, self.store, source)
        self.assertEqual(counts, {'checked': 2, 'enriched': 1, 'failed': 1})
        self.assertIsNone(self.store.get_company(self.user, alpha)['industry'])
        self.assertEqual(self.store.get_company(self.user, beta)['industry'], 'SaaS')

    def test_store_error_is_counted(self):
        add_company(self.store, self.user, "Alpha", "alpha.io", industry=None)
        source = MagicMock()
        source.enrich.return_value = {'industry': 'SaaS'}
        with patch.object(self.store, 'update_company_enrichment', side_effect=RuntimeError("locked")):
            counts = enrich_companies(self.user, self.store, source)
        self.assertEqual(counts['failed'], 1)

    def test_source_rejects_non_dict_reply(self):
        completion = MagicMock()
        completion.complete.return_value = ['SaaS']
        with self.assertRaises(ServiceError):
            CompletionEnrichmentSource(completion).enrich({'name': 'Acme'})


if __name__ == '__main__':
    unittest.main()
