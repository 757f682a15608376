"""
Unit tests for configuration (merdeglace/config.py).
"""

from datetime import timedelta

import pytest

from merdeglace.config import ConfigError, config_mapping, load_settings


class TestLoadSettings:
    """Test validating environment-style configuration."""

    def test_load_settings(self, env_settings, content_dir):
        settings = load_settings(env_settings)

        assert settings.content_directory == str(content_dir)
        assert settings.database.host == 'db'
        assert settings.database.port == 3306
        assert settings.database.password == 's3cret'
        assert settings.glacier_vault == 'test-vault'
        assert settings.policy.backup_interval == timedelta(days=1)
        assert settings.policy.rolling_period == timedelta(days=7)
        assert settings.create_vault is True
        assert settings.stage_timeout == 3600.0
        assert settings.alert_after_failures == 3
        assert settings.poll_interval == 60.0
        assert settings.content_exclude == []
        assert settings.log_dir is None

    @pytest.mark.parametrize('key', [
        'WORDPRESS_DIRECTORY',
        'MYSQL_HOST',
        'MYSQL_DATABASE',
        'MYSQL_USER',
        'MYSQL_PASSWORD',
        'BACKUPS_DIRECTORY',
        'AWS_GLACIER_VAULT',
    ])
    def test_missing_required(self, env_settings, key):
        env_settings[key] = ''

        with pytest.raises(ConfigError, match=key):
            load_settings(env_settings)

    @pytest.mark.parametrize('key,value', [
        ('BACKUP_INTERVAL', 'daily'),
        ('BACKUP_INTERVAL', '0'),
        ('BACKUP_INTERVAL', '-1'),
        ('ARCHIVE_ROLLING_PERIOD', '-2'),
        ('MYSQL_PORT', 'abc'),
        ('ALERT_AFTER_FAILURES', '0'),
        ('STAGE_TIMEOUT', '-5'),
        ('SCHEDULER_POLL_INTERVAL', '0'),
    ])
    def test_invalid_numbers(self, env_settings, key, value):
        env_settings[key] = value

        with pytest.raises(ConfigError, match=key):
            load_settings(env_settings)

    def test_fractional_days(self, env_settings):
        env_settings['BACKUP_INTERVAL'] = '0.5'
        env_settings['ARCHIVE_ROLLING_PERIOD'] = '1.5'

        settings = load_settings(env_settings)

        assert settings.policy.backup_interval == timedelta(hours=12)
        assert settings.policy.rolling_period == timedelta(hours=36)

    def test_rolling_shorter_than_interval_warns(self, env_settings, caplog):
        env_settings['BACKUP_INTERVAL'] = '7'
        env_settings['ARCHIVE_ROLLING_PERIOD'] = '1'

        load_settings(env_settings)

        assert "shorter than BACKUP_INTERVAL" in caplog.text

    def test_stage_timeout_zero_disables(self, env_settings):
        env_settings['STAGE_TIMEOUT'] = '0'

        assert load_settings(env_settings).stage_timeout is None

    def test_content_exclude_list(self, env_settings):
        env_settings['CONTENT_EXCLUDE'] = 'wp-content/cache, *.log,,'

        assert load_settings(env_settings).content_exclude == ['wp-content/cache', '*.log']

    @pytest.mark.parametrize('value,expected', [
        ('true', True), ('1', True), ('YES', True), (True, True),
        ('false', False), ('0', False), ('off', False), (False, False),
        ('', True), (None, True),
    ])
    def test_create_vault_flag(self, env_settings, value, expected):
        env_settings['AWS_GLACIER_CREATE_VAULT'] = value

        assert load_settings(env_settings).create_vault is expected

    def test_invalid_flag(self, env_settings):
        env_settings['AWS_GLACIER_CREATE_VAULT'] = 'maybe'

        with pytest.raises(ConfigError, match="AWS_GLACIER_CREATE_VAULT"):
            load_settings(env_settings)

    def test_explicit_credentials_optional(self, env_settings):
        env_settings['AWS_ACCESS_KEY_ID'] = ''
        env_settings['AWS_SECRET_ACCESS_KEY'] = None

        settings = load_settings(env_settings)

        assert settings.aws_access_key_id is None
        assert settings.aws_secret_access_key is None
        assert settings.describe()['aws_credentials'] == 'default chain'

    def test_describe_hides_secrets(self, env_settings):
        env_settings['AWS_SECRET_ACCESS_KEY'] = 'very-secret-key'

        settings = load_settings(env_settings)

        assert 's3cret' not in str(settings.describe())
        assert 'very-secret-key' not in str(settings.describe())
        assert 's3cret' not in repr(settings)
        assert 'very-secret-key' not in repr(settings)


class TestConfigMapping:
    """Test configuration classes."""

    def test_testing_config(self):
        mapping = config_mapping('testing')

        assert mapping['TESTING'] is True
        assert mapping['SCHEDULER_AUTOSTART'] is False
        assert mapping['LOG_DIR'] is None
        assert mapping['BACKUP_INTERVAL'] is not None

    def test_production_defaults(self):
        mapping = config_mapping('production')

        assert mapping['SCHEDULER_AUTOSTART'] is True
        assert mapping['SCHEDULER_TIMEZONE'] == 'UTC'

    def test_unknown_config(self):
        with pytest.raises(ConfigError, match="Unknown configuration"):
            config_mapping('staging')

    def test_loads_from_config_class(self, env_settings):
        mapping = config_mapping('testing')
        mapping.update(env_settings)

        assert load_settings(mapping).glacier_vault == 'test-vault'
