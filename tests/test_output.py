#!/usr/bin/env python3
"""
Unit tests for JSON lines job output.
"""

import io
import json
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_groupops.models import JobResult, Severity
from ldap_groupops.output import JsonLinesEmitter, scaled


class TestJsonLinesEmitter(unittest.TestCase):

    def setUp(self):
        self.stream = io.StringIO()
        self.emitter = JsonLinesEmitter(stream=self.stream)

    def lines(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines()]

    def test_progress_never_goes_backwards(self):
        self.emitter.progress(0.5, 'Resolving')
        self.emitter.progress(0.2, 'Late event')
        self.emitter.progress(1.7, 'Done')

        self.assertEqual([line['progress'] for line in self.lines()], [0.5, 0.5, 1.0])
        self.assertEqual(self.lines()[1]['status'], 'Late event')

    def test_result_is_last_line(self):
        self.emitter.progress(0.0, 'Starting')
        self.emitter.result(JobResult(Severity.SUCCESS, '1 group(s) deleted', result={'successCount': 1}))

        last = self.lines()[-1]
        self.assertEqual(last['type'], 'result')
        self.assertEqual(last['code'], 0)
        self.assertEqual(last['result'], {'successCount': 1})

    def test_error_envelope_has_no_result(self):
        self.emitter.result(JobResult(Severity.ERROR, 'Unknown operation', result={'ignored': True}))
        self.assertEqual(self.lines()[0], {'type': 'result', 'code': 1, 'severity': 'error',
                                           'description': 'Unknown operation'})


class TestScaled(unittest.TestCase):

    def test_maps_into_range(self):
        self.assertAlmostEqual(scaled(0.3, 0.9, 1, 2), 0.6)

    def test_empty_total_is_end(self):
        self.assertEqual(scaled(0.3, 0.9, 0, 0), 0.9)


if __name__ == '__main__':
    unittest.main()
