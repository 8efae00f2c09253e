"""Unit tests for ConfigManager."""

import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from greypool.config_manager import ConfigManager, PoolConfig
from greypool.exceptions import ConfigurationError
from greypool.models import MAX_COPIES


class TestConfigManager(unittest.TestCase):
    """Test cases for ConfigManager class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config_file = os.path.join(self.temp_dir, 'greypool.json')

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, data):
        with open(self.config_file, 'w') as f:
            json.dump(data, f)
        return ConfigManager(self.config_file)

    def test_default_config_creation(self):
        """Test creation of default configuration."""
        config = PoolConfig()

        self.assertEqual(config.storage_pool_drives, [])
        self.assertEqual(config.destination_policy, "most_available_space")
        self.assertEqual(config.checksum_mismatch_policy, "keep")
        self.assertEqual(config.max_workers, 4)
        self.assertTrue(config.adopt_orphans)
        self.assertEqual(config.fsck_schedule, "0 3 * * 0")

    def test_missing_file_uses_defaults(self):
        config = ConfigManager(os.path.join(self.temp_dir, 'missing.json')).load_config()
        self.assertEqual(config.log_level, "INFO")
        self.assertEqual(config.shares, {})

    def test_load_from_file(self):
        manager = self._write_config({
            'storage_pool_drives': ['/mnt/d1', '/mnt/d2'],
            'shares': {
                'docs': {'landing_zone': '/srv/docs', 'num_copies': 2},
                'media': {'landing_zone': '/srv/media', 'num_copies': 'max', 'drives': ['/mnt/d2']},
            },
            'max_workers': 8,
        })
        config = manager.load_config()

        self.assertEqual(config.storage_pool_drives, ['/mnt/d1', '/mnt/d2'])
        self.assertEqual(config.max_workers, 8)

        shares = manager.get_shares()
        self.assertEqual(shares['docs'].num_copies, 2)
        self.assertEqual(shares['docs'].drives, [])
        self.assertEqual(shares['media'].num_copies, MAX_COPIES)
        self.assertEqual(shares['media'].drives, ['/mnt/d2'])

    def test_config_is_cached_until_reload(self):
        manager = self._write_config({'max_workers': 2})
        first = manager.load_config()
        self._write_config({'max_workers': 6})

        self.assertIs(manager.load_config(), first)
        self.assertEqual(manager.reload_config().max_workers, 6)

    @patch.dict(os.environ, {
        'GREYPOOL_STORAGE_POOL_DRIVES': '/mnt/d1, /mnt/d2',
        'GREYPOOL_LOG_LEVEL': 'DEBUG',
        'GREYPOOL_MAX_WORKERS': '3',
        'GREYPOOL_ADOPT_ORPHANS': 'false',
        'GREYPOOL_SHARES': '{"docs": {"landing_zone": "/srv/docs"}}',
    })
    def test_load_from_environment(self):
        """Test environment variables override the file."""
        manager = self._write_config({'max_workers': 8, 'log_level': 'WARNING'})
        config = manager.load_config()

        self.assertEqual(config.storage_pool_drives, ['/mnt/d1', '/mnt/d2'])
        self.assertEqual(config.log_level, 'DEBUG')
        self.assertEqual(config.max_workers, 3)
        self.assertFalse(config.adopt_orphans)
        self.assertEqual(manager.get_shares()['docs'].num_copies, 1)

    @patch.dict(os.environ, {'GREYPOOL_MAX_WORKERS': 'many'})
    def test_invalid_integer_in_environment(self):
        with self.assertRaises(ConfigurationError):
            ConfigManager().load_config()

    def test_unknown_keys_are_ignored(self):
        config = self._write_config({'colour': 'blue'}).load_config()
        self.assertFalse(hasattr(config, 'colour'))

    def test_invalid_json_file(self):
        with open(self.config_file, 'w') as f:
            f.write('{not json')
        with self.assertRaises(ConfigurationError):
            ConfigManager(self.config_file).load_config()

    def test_validation_errors(self):
        invalid_configs = [
            {'max_workers': 0},
            {'log_level': 'LOUD'},
            {'destination_policy': 'round_robin'},
            {'checksum_mismatch_policy': 'ignore'},
            {'storage_pool_drives': ['relative/path']},
            {'shares': {'docs': {}}},
            {'shares': {'docs': {'landing_zone': 'srv/docs'}}},
            {'shares': {'docs': {'landing_zone': '/srv/docs', 'num_copies': 0}}},
            {'shares': {'docs': {'landing_zone': '/srv/docs', 'num_copies': 'lots'}}},
            {'storage_pool_drives': ['/mnt/d1'],
             'shares': {'docs': {'landing_zone': '/srv/docs', 'drives': ['/mnt/d9']}}},
        ]
        for data in invalid_configs:
            with self.subTest(data=data):
                with self.assertRaises(ConfigurationError):
                    self._write_config(data).load_config()

    def test_save_config(self):
        manager = ConfigManager(self.config_file)
        config = PoolConfig(storage_pool_drives=['/mnt/d1'], max_workers=2)

        self.assertTrue(manager.save_config(config))
        with open(self.config_file) as f:
            saved = json.load(f)
        self.assertEqual(saved['storage_pool_drives'], ['/mnt/d1'])
        self.assertEqual(saved['max_workers'], 2)
        self.assertEqual(
            [name for name in os.listdir(self.temp_dir) if name != 'greypool.json'], []
        )

    def test_save_config_without_path(self):
        self.assertFalse(ConfigManager().save_config(PoolConfig()))

    def test_remove_storage_pool_drive(self):
        manager = self._write_config({
            'storage_pool_drives': ['/mnt/d1', '/mnt/d2'],
            'shares': {'docs': {'landing_zone': '/srv/docs', 'drives': ['/mnt/d1', '/mnt/d2']}},
        })

        self.assertTrue(manager.remove_storage_pool_drive('/mnt/d1'))

        reloaded = ConfigManager(self.config_file)
        self.assertEqual(reloaded.load_config().storage_pool_drives, ['/mnt/d2'])
        self.assertEqual(reloaded.get_shares()['docs'].drives, ['/mnt/d2'])

    def test_drive_paths_normalized(self):
        manager = self._write_config({
            'storage_pool_drives': ['/mnt/d1/', '/mnt//d2'],
            'shares': {'docs': {'landing_zone': '/srv/docs/', 'drives': ['/mnt/d1/']}},
        })

        config = manager.load_config()
        self.assertEqual(config.storage_pool_drives, ['/mnt/d1', '/mnt/d2'])
        share = manager.get_shares()['docs']
        self.assertEqual(share.landing_zone, '/srv/docs')
        self.assertTrue(share.is_drive_eligible('/mnt/d1'))

        self.assertTrue(manager.remove_storage_pool_drive('/mnt/d1'))

        reloaded = ConfigManager(self.config_file)
        self.assertEqual(reloaded.load_config().storage_pool_drives, ['/mnt/d2'])
        self.assertEqual(reloaded.get_shares()['docs'].drives, [])

    def test_remove_drive_already_absent(self):
        manager = self._write_config({'storage_pool_drives': ['/mnt/d2']})

        with self.assertLogs('greypool.config_manager', level='INFO') as logs:
            self.assertTrue(manager.remove_storage_pool_drive('/mnt/d1/'))

        self.assertTrue(any('already absent' in line for line in logs.output))
        self.assertEqual(ConfigManager(self.config_file).load_config().storage_pool_drives,
                         ['/mnt/d2'])


if __name__ == '__main__':
    unittest.main()
