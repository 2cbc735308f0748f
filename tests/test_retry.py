#!/usr/bin/env python3
"""
Unit tests for retry utilities.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_group_sync.retry import (
    MaxRetriesExceeded,
    RetryableError,
    RetryPolicy,
    create_retry_callback,
    is_retryable_error,
    retry_call,
)


class TestRetryPolicy(unittest.TestCase):

    def test_from_config_counts_initial_attempt(self):
        policy = RetryPolicy.from_config({'max_retries': 2, 'retry_wait_seconds': 3,
                                          'retry_backoff': 2.0})
        self.assertEqual(policy.max_attempts, 3)
        self.assertEqual(list(policy.delays()), [3, 6.0])

    def test_from_empty_config(self):
        policy = RetryPolicy.from_config({})
        self.assertEqual(policy.max_attempts, 4)
        self.assertEqual(policy.delay, 5)
        self.assertEqual(policy.backoff, 1.0)

    def test_with_overrides(self):
        policy = RetryPolicy(max_attempts=4, delay=5, backoff=2.0)
        override = policy.with_overrides(max_attempts=2, delay=0)
        self.assertEqual(override.max_attempts, 2)
        self.assertEqual(override.delay, 0)
        self.assertEqual(override.backoff, 2.0)
        self.assertEqual(policy.with_overrides().max_attempts, 4)

    def test_rejects_zero_attempts(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)


@patch('ldap_group_sync.retry.time.sleep')
class TestRetryCall(unittest.TestCase):

    def test_returns_first_success(self, mock_sleep):
        func = Mock(return_value='ok')
        self.assertEqual(retry_call(func, ('a',), {'b': 1}), 'ok')
        func.assert_called_once_with('a', b=1)
        mock_sleep.assert_not_called()

    def test_retries_with_backoff(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError('refused'), ConnectionError('refused'), 'ok'])
        on_retry = Mock()

        result = retry_call(func, max_attempts=3, delay=1.0, backoff=2.0, on_retry=on_retry)

        self.assertEqual(result, 'ok')
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [1.0, 2.0])
        self.assertEqual([c.args[0] for c in on_retry.call_args_list], [1, 2])

    def test_raises_after_last_attempt(self, mock_sleep):
        error = TimeoutError('timed out')
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as ctx:
            retry_call(func, max_attempts=3, delay=0)

        self.assertEqual(func.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIs(ctx.exception.last_exception, error)

    def test_unlisted_exceptions_propagate(self, mock_sleep):
        func = Mock(side_effect=KeyError('boom'))
        with self.assertRaises(KeyError):
            retry_call(func, exceptions=(ConnectionError,))
        func.assert_called_once_with()

    def test_failing_callback_does_not_stop_retries(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError('reset'), 'ok'])
        on_retry = Mock(side_effect=RuntimeError('callback broke'))
        self.assertEqual(retry_call(func, delay=0, on_retry=on_retry), 'ok')


class TestRetryHelpers(unittest.TestCase):

    def test_is_retryable_error(self):
        self.assertTrue(is_retryable_error(ConnectionError('x')))
        self.assertTrue(is_retryable_error(RetryableError('x')))
        self.assertTrue(is_retryable_error(Exception('Server is busy, try later')))
        self.assertTrue(is_retryable_error(Exception('database is unavailable')))
        self.assertFalse(is_retryable_error(ValueError('invalidCredentials')))

    def test_retry_callback_logs_warning(self):
        callback = create_retry_callback('Opening group store')
        with self.assertLogs('ldap_group_sync.retry', level='WARNING') as logs:
            callback(1, ConnectionError('connection refused'))
        self.assertIn('Opening group store failed on attempt 1', logs.output[0])
        self.assertIn('transient ConnectionError', logs.output[0])


if __name__ == '__main__':
    unittest.main()
