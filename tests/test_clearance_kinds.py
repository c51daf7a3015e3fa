from __future__ import annotations

import unittest

from storage_portal.clearance_kinds import Damaged, Other, Seeding, kind_from_tag, parse_kind
from storage_portal.errors import PreconditionFailed


class ClearanceKindTests(unittest.TestCase):
    def test_seeding_metadata_uses_camel_case(self) -> None:
        metadata = Seeding(original_quantity=5, borrow_request_id=12).to_metadata()

        self.assertEqual(metadata, {'type': 'seeding', 'originalQuantity': 5, 'borrowRequestId': 12})
        self.assertEqual(parse_kind(metadata), Seeding(5, 12))

    def test_parse_accepts_string_numbers_and_case(self) -> None:
        kind = parse_kind({'type': 'Seeding', 'originalQuantity': '3', 'borrowRequestId': None})

        self.assertEqual(kind, Seeding(original_quantity=3, borrow_request_id=None))

    def test_malformed_metadata_gives_none(self) -> None:
        self.assertIsNone(parse_kind(None))
        self.assertIsNone(parse_kind({'originalQuantity': 3}))
        self.assertIsNone(parse_kind({'type': 'seeding', 'originalQuantity': 'lots'}))
        self.assertIsNone(parse_kind({'type': 'seeding', 'originalQuantity': -1}))
        self.assertIsNone(parse_kind({'type': 'lost'}))

    def test_other_keeps_extra_keys(self) -> None:
        kind = parse_kind({'type': 'other', 'previousInClearance': 4, 'newInClearance': 2})

        self.assertEqual(kind, Other({'previousInClearance': 4, 'newInClearance': 2}))
        self.assertEqual(kind.to_metadata()['type'], 'other')

    def test_unreadable_borrow_link_keeps_seeding_kind(self) -> None:
        with self.assertLogs('storage_portal.clearance_kinds', level='WARNING'):
            kind = parse_kind({'type': 'seeding', 'originalQuantity': 5, 'borrowRequestId': 'br1'})

        self.assertEqual(kind, Seeding(original_quantity=5, borrow_request_id=None))

    def test_kind_from_tag(self) -> None:
        self.assertEqual(kind_from_tag('DAMAGED'), Damaged())
        self.assertEqual(kind_from_tag(None), Other())
        with self.assertRaises(PreconditionFailed):
            kind_from_tag('seeding')


if __name__ == '__main__':
    unittest.main()
