from __future__ import annotations

import io
import json
import logging
import unittest
from decimal import Decimal

from app.logging_config import configure_logging, get_logger, reset_logging


class LoggingConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_logging()
        self.stream = io.StringIO()
        configure_logging(level='DEBUG', handler=logging.StreamHandler(self.stream))

    def tearDown(self) -> None:
        reset_logging()

    def test_records_are_json_lines_with_extras(self) -> None:
        get_logger('services.autosave').info('autosave write succeeded', extra={'order_id': 'o1', 'amount': Decimal('1.50')})

        payload = json.loads(self.stream.getvalue().strip())
        self.assertEqual(payload['logger'], 'app.services.autosave')
        self.assertEqual(payload['level'], 'INFO')
        self.assertEqual(payload['message'], 'autosave write succeeded')
        self.assertEqual(payload['order_id'], 'o1')
        self.assertEqual(payload['amount'], '1.50')

    def test_exception_details_are_included(self) -> None:
        try:
            raise RuntimeError('db down')
        except RuntimeError:
            get_logger('services.order_sync').warning('write failed', exc_info=True)

        payload = json.loads(self.stream.getvalue().strip())
        self.assertEqual(payload['exc_type'], 'RuntimeError')
        self.assertEqual(payload['exc_message'], 'db down')
        self.assertIn('Traceback', payload['traceback'])

    def test_configure_is_idempotent(self) -> None:
        configure_logging(level='INFO', handler=logging.StreamHandler(io.StringIO()))
        self.assertEqual(len(logging.getLogger('app').handlers), 1)
        self.assertEqual(logging.getLogger('app').level, logging.DEBUG)


if __name__ == '__main__':
    unittest.main()
