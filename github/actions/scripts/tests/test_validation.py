#!/usr/bin/env python3
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

# Import from parent directory
sys.path.insert(0, str(Path(__file__).parent.parent))
import runner

class TestConfigValidation(unittest.TestCase):
    """
    Tests for Input Validation and Sanitization in Config.
    """

    def setUp(self):
        self.base_env = {
            'GITHUB_ORGANIZATION': 'rpmbsys',
            'GITHUB_ACCESS_TOKEN': 'ghp_validtoken123',
        }

    def _validate(self, **extra):
        env = self.base_env.copy()
        env.update(extra)
        with patch.dict('os.environ', env, clear=True):
            config = runner.Config()
            config.validate()
        return config

    def test_organization_valid(self):
        for org in ["rpmbsys", "my-org", "Org_01", "a.b", "x" * 60]:
            try:
                self._validate(GITHUB_ORGANIZATION=org)
            except runner.RunnerError:
                self.fail(f"Valid organization '{org}' raised RunnerError unexpectedly")

    def test_organization_invalid(self):
        invalid = [
            "x" * 61,
            "org with spaces",
            "org;rm -rf /",     # Command injection attempt
            "org/../etc",       # Path traversal attempt
            "org$VAR",
            "org\n",
        ]
        for org in invalid:
            with self.assertRaises(runner.RunnerError, msg=repr(org)) as cm:
                self._validate(GITHUB_ORGANIZATION=org)
            self.assertIn("GITHUB_ORGANIZATION contains invalid characters", str(cm.exception))

    def test_access_token_invalid(self):
        for token in ["ghp_abc def", "ghp-abc", "ghp_abc;id", "ghp_abc\n"]:
            with self.assertRaises(runner.RunnerError) as cm:
                self._validate(GITHUB_ACCESS_TOKEN=token)
            self.assertIn("GITHUB_ACCESS_TOKEN contains invalid characters", str(cm.exception))

    def test_hidden_env_vars_valid(self):
        config = self._validate(HIDDEN_ENV_VARS="DATABASE_URL REDIS_URL  S3_KEY")
        self.assertEqual(config.hidden_vars, ["DATABASE_URL", "REDIS_URL", "S3_KEY"])

    def test_hidden_env_vars_invalid(self):
        for value in ["database_url", "DATABASE_URL;id", "1VAR", "A,B", " DATABASE_URL"]:
            with self.assertRaises(runner.RunnerError, msg=repr(value)) as cm:
                self._validate(HIDDEN_ENV_VARS=value)
            self.assertIn("HIDDEN_ENV_VARS contains invalid characters", str(cm.exception))

    def test_labels_valid(self):
        """Test valid comma-separated labels"""
        self._validate(GITHUB_RUNNER_LABELS="heroku,x64,production,high-cpu")

    def test_labels_invalid(self):
        """Test labels with invalid characters"""
        with self.assertRaises(runner.RunnerError) as cm:
            self._validate(GITHUB_RUNNER_LABELS="good-label,bad label,gpu")
        self.assertIn("Invalid label 'bad label'", str(cm.exception))

    def test_runner_group_valid(self):
        self._validate(GITHUB_RUNNER_GROUP="heroku-runners")

    def test_runner_group_invalid(self):
        """Test runner group validation"""
        with self.assertRaises(runner.RunnerError) as cm:
            self._validate(GITHUB_RUNNER_GROUP="Default Group")  # Has space
        self.assertIn("Invalid GITHUB_RUNNER_GROUP", str(cm.exception))

if __name__ == '__main__':
    unittest.main(verbosity=2)
