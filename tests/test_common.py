#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. run_command execution and error handling
2. Error formatting with resource id and action
3. Retry backoff delays
4. Duration parsing
"""

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import (
    CycleError,
    FatalTargetError,
    StackError,
    TransientTargetError,
    ValidationError,
    backoff_delay,
    parse_duration,
    run_command,
)


class TestRunCommand:
    """Test run_command utility."""

    def test_returns_success_tuple(self):
        """Should return (returncode, stdout, stderr) on success."""
        rc, stdout, stderr = run_command(['echo', 'hello'])
        assert rc == 0
        assert 'hello' in stdout
        assert stderr == ''

    def test_returns_failure_tuple(self):
        """Should return non-zero returncode on failure."""
        rc, stdout, stderr = run_command(['false'])
        assert rc != 0

    def test_captures_stderr(self):
        """Should capture stderr."""
        rc, stdout, stderr = run_command(['sh', '-c', 'echo error >&2'])
        assert 'error' in stderr

    def test_respects_cwd(self, tmp_path):
        """Should run command in specified directory."""
        (tmp_path / 'marker.txt').write_text('found')
        rc, stdout, stderr = run_command(['cat', 'marker.txt'], cwd=tmp_path)
        assert rc == 0
        assert 'found' in stdout

    def test_timeout_returns_error(self):
        """Should return error on timeout."""
        rc, stdout, stderr = run_command(['sleep', '10'], timeout=1)
        assert rc == -1
        assert 'timed out' in stderr.lower()

    def test_missing_binary(self):
        """Should report a missing executable instead of raising."""
        rc, stdout, stderr = run_command(['/nonexistent/binary'])
        assert rc == -1
        assert stderr

    def test_passes_env_vars(self):
        """Should pass custom environment variables."""
        custom_env = os.environ.copy()
        custom_env['TEST_VAR'] = 'test_value'
        rc, stdout, stderr = run_command(['sh', '-c', 'echo $TEST_VAR'], env=custom_env)
        assert rc == 0
        assert 'test_value' in stdout


class TestStackError:
    """Test error message formatting."""

    def test_with_resource_and_action(self):
        err = FatalTargetError('quota exceeded', 'WebServerHost', 'create')
        assert str(err) == 'WebServerHost: create failed: quota exceeded'
        assert err.message == 'quota exceeded'
        assert err.retryable is False

    def test_with_resource_only(self):
        assert str(ValidationError('bad value', 'Host')) == 'Host: bad value'

    def test_message_only(self):
        assert str(StackError('plain')) == 'plain'

    def test_transient_retry_after(self):
        err = TransientTargetError('throttled', 'Host', 'update', retry_after=2.5)
        assert err.retryable is True
        assert err.retry_after == 2.5

    def test_cycle(self):
        err = CycleError(['A', 'B', 'A'])
        assert err.cycle == ['A', 'B', 'A']
        assert str(err) == 'Dependency cycle detected: A -> B -> A'
        assert isinstance(err, ValidationError)


class TestBackoffDelay:
    """Test exponential backoff."""

    def test_doubles_per_attempt(self):
        assert [backoff_delay(n, 1.0, 30.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert backoff_delay(10, 1.0, 30.0) == 30.0

    def test_zero_attempt(self):
        assert backoff_delay(0, 1.0, 30.0) == 0.0


class TestParseDuration:
    """Test ISO-8601 duration parsing."""

    @pytest.mark.parametrize('value,expected', [
        ('PT15M', 900.0),
        ('PT1H30M', 5400.0),
        ('PT45S', 45.0),
        ('P1D', 86400.0),
        ('pt2m', 120.0),
        ('300', 300.0),
        (60, 60.0),
    ])
    def test_valid(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize('value', ['PT', 'P', '15 minutes', 'PT5X', True])
    def test_invalid(self, value):
        with pytest.raises(ValueError, match='Invalid duration'):
            parse_duration(value)
