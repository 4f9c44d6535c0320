from datetime import timedelta
from unittest import mock

from django.core.cache import cache
from django.db import OperationalError
from django.test import TestCase, override_settings
from django.utils import timezone

from configuration import services
from configuration.exceptions import (
    NotFoundError,
    TransientStoreError,
    ValidationError,
    VersionConflictError,
    VersionNotFoundError,
)
from configuration.models import ChangeType, ConfigurationHistory, ConfigurationRecord
from configuration.services import (
    ConfigUpdate,
    Scope,
    bulk_update_config,
    delete_config,
    get_active_configs,
    get_config_history,
    get_config_version,
    list_config_versions,
    rollback_config,
    write_config,
)

WORKSPACE = "ws-1"
MAX_RESULTS = Scope(WORKSPACE, "search_config", "max_results", "production")

RECORD_CHANGES = [ChangeType.CREATE, ChangeType.UPDATE, ChangeType.ROLLBACK]


class ConfigStoreTestCase(TestCase):
    def setUp(self):
        cache.clear()

    def assertSingleActive(self, scope):
        active = ConfigurationRecord.objects.filter(is_active=True, **scope.filter_kwargs())
        self.assertEqual(active.count(), 1)
        return active.get()

    def versions(self, scope):
        return list(
            ConfigurationRecord.objects.filter(**scope.filter_kwargs())
            .order_by("version")
            .values_list("version", flat=True)
        )


class WriteConfigTests(ConfigStoreTestCase):
    def test_create_then_update_keeps_one_active_version(self):
        record = write_config(MAX_RESULTS, 10, actor="alice")
        records = get_active_configs(WORKSPACE, "production")
        self.assertEqual([(r.version, r.value, r.is_active) for r in records], [(1, 10, True)])
        self.assertTrue(record.is_validated)
        self.assertEqual(record.created_by, "alice")

        write_config(MAX_RESULTS, 20, actor="alice")
        active = self.assertSingleActive(MAX_RESULTS)
        self.assertEqual((active.version, active.value), (2, 20))
        self.assertFalse(get_config_version(MAX_RESULTS, 1).is_active)

        entries = get_config_history(WORKSPACE).entries
        self.assertEqual(
            [(e.change_type, e.old_value, e.new_value) for e in reversed(entries)],
            [("create", None, 10), ("update", 10, 20)],
        )

    def test_invalid_value_is_rejected_before_any_write(self):
        with self.assertRaises(ValidationError) as ctx:
            write_config(MAX_RESULTS, 500)
        self.assertEqual(ctx.exception.errors, ["Max results must be between 1 and 100"])
        self.assertFalse(ConfigurationRecord.objects.exists())
        self.assertFalse(ConfigurationHistory.objects.exists())

    def test_schema_errors_block_the_write(self):
        scope = Scope(WORKSPACE, "vector_db_config", "index", "production")
        with self.assertRaises(ValidationError):
            write_config(scope, {"dimension": 384}, schema={"type": "object", "required": ["provider"]})
        self.assertFalse(ConfigurationRecord.objects.exists())

    def test_environments_are_versioned_independently(self):
        write_config(MAX_RESULTS, 10)
        staging = MAX_RESULTS._replace(environment="staging")
        record = write_config(staging, 30)
        self.assertEqual(record.version, 1)
        self.assertEqual([r.value for r in get_active_configs(WORKSPACE, "staging")], [30])
        self.assertEqual([r.value for r in get_active_configs(WORKSPACE, "production")], [10])

    def test_active_configs_are_ordered_and_filtered_by_category(self):
        write_config(Scope(WORKSPACE, "search_config", "similarity_threshold"), 0.7)
        write_config(Scope(WORKSPACE, "model_params", "temperature"), 0.2)
        write_config(MAX_RESULTS, 10)

        records = get_active_configs(WORKSPACE)
        self.assertEqual(
            [(r.config_category, r.config_key) for r in records],
            [
                ("model_params", "temperature"),
                ("search_config", "max_results"),
                ("search_config", "similarity_threshold"),
            ],
        )
        self.assertEqual(len(get_active_configs(WORKSPACE, category="search_config")), 2)

    def test_repeated_reads_are_identical(self):
        write_config(MAX_RESULTS, 10)
        first = [(r.pk, r.version, r.value) for r in get_active_configs(WORKSPACE)]
        second = [(r.pk, r.version, r.value) for r in get_active_configs(WORKSPACE)]
        self.assertEqual(first, second)

    def test_writes_invalidate_cached_reads(self):
        write_config(MAX_RESULTS, 10)
        self.assertEqual(get_active_configs(WORKSPACE)[0].value, 10)
        self.assertEqual(get_active_configs(WORKSPACE, category="search_config")[0].value, 10)

        write_config(MAX_RESULTS, 20)
        self.assertEqual(get_active_configs(WORKSPACE)[0].value, 20)
        self.assertEqual(get_active_configs(WORKSPACE, category="search_config")[0].value, 20)

    def test_cache_is_dropped_again_when_the_transaction_commits(self):
        write_config(MAX_RESULTS, 10)
        key = services._active_cache_key(WORKSPACE, "production")
        with self.captureOnCommitCallbacks(execute=True):
            write_config(MAX_RESULTS, 20)
            # a reader outside the open transaction still sees v1
            cache.set(key, ["stale"])
        self.assertIsNone(cache.get(key))
        self.assertEqual(get_active_configs(WORKSPACE)[0].value, 20)

    def test_lost_version_race_is_retried(self):
        write_config(MAX_RESULTS, 10)
        real_next_version = services._next_version
        calls = []

        def stale_then_real(scope):
            calls.append(scope)
            if len(calls) == 1:
                return 1
            return real_next_version(scope)

        with mock.patch("configuration.services._next_version", side_effect=stale_then_real):
            record = write_config(MAX_RESULTS, 20)

        self.assertEqual(len(calls), 2)
        self.assertEqual(record.version, 2)
        self.assertEqual(self.versions(MAX_RESULTS), [1, 2])
        self.assertEqual(self.assertSingleActive(MAX_RESULTS).value, 20)
        self.assertEqual(ConfigurationHistory.objects.count(), 2)

    @override_settings(CONFIG_WRITE_RETRY_ATTEMPTS=2)
    def test_persistent_conflict_raises_and_leaves_store_untouched(self):
        write_config(MAX_RESULTS, 10)
        with mock.patch("configuration.services._next_version", return_value=1):
            with self.assertRaises(VersionConflictError):
                write_config(MAX_RESULTS, 20)

        self.assertEqual(self.versions(MAX_RESULTS), [1])
        self.assertEqual(self.assertSingleActive(MAX_RESULTS).value, 10)
        self.assertEqual(ConfigurationHistory.objects.count(), 1)

    def test_database_outage_surfaces_as_transient_error(self):
        with mock.patch.object(
            ConfigurationRecord.objects, "filter", side_effect=OperationalError("database is locked")
        ):
            with self.assertRaises(TransientStoreError):
                get_active_configs(WORKSPACE, use_cache=False)


class RollbackTests(ConfigStoreTestCase):
    def test_rollback_creates_new_version_with_target_value(self):
        write_config(MAX_RESULTS, 10)
        write_config(MAX_RESULTS, 20)

        record = rollback_config(MAX_RESULTS, 1, actor="carol", reason="bad tuning")

        self.assertEqual((record.version, record.value, record.is_active), (3, 10, True))
        self.assertFalse(get_config_version(MAX_RESULTS, 2).is_active)
        self.assertSingleActive(MAX_RESULTS)

        entries = get_config_history(WORKSPACE).entries
        self.assertEqual(len(entries), 3)
        latest = entries[0]
        self.assertEqual(latest.change_type, "rollback")
        self.assertEqual((latest.old_value, latest.new_value), (20, 10))
        self.assertEqual(latest.change_reason, "bad tuning")
        self.assertEqual(latest.change_description, "Rolled back to version 1")
        self.assertEqual(latest.configuration_id, record.pk)

    def test_rollback_never_reuses_the_target_version(self):
        for value in (10, 20, 30, 40, 50, 60, 70):
            write_config(MAX_RESULTS, value)

        record = rollback_config(MAX_RESULTS, 3)
        self.assertEqual(record.version, 8)
        self.assertEqual(record.value, get_config_version(MAX_RESULTS, 3).value)
        self.assertEqual(self.versions(MAX_RESULTS), list(range(1, 9)))

    def test_rollback_to_missing_version_fails_without_side_effects(self):
        write_config(MAX_RESULTS, 10)
        with self.assertRaises(VersionNotFoundError):
            rollback_config(MAX_RESULTS, 7)
        self.assertEqual(self.versions(MAX_RESULTS), [1])
        self.assertEqual(ConfigurationHistory.objects.count(), 1)

    def test_rollback_without_active_record_fails(self):
        write_config(MAX_RESULTS, 10)
        delete_config(MAX_RESULTS)
        with self.assertRaises(NotFoundError):
            rollback_config(MAX_RESULTS, 1)
        self.assertEqual(self.versions(MAX_RESULTS), [1])

    def test_rollback_of_unknown_scope_fails(self):
        with self.assertRaises(VersionNotFoundError):
            rollback_config(MAX_RESULTS, 1)
        self.assertFalse(ConfigurationRecord.objects.exists())


class DeleteTests(ConfigStoreTestCase):
    def test_delete_deactivates_and_keeps_history(self):
        write_config(MAX_RESULTS, 10)
        deleted = delete_config(MAX_RESULTS, actor="dave")

        self.assertEqual(get_active_configs(WORKSPACE), [])
        self.assertEqual(ConfigurationRecord.objects.count(), 1)
        entry = get_config_history(WORKSPACE).entries[0]
        self.assertEqual((entry.change_type, entry.old_value, entry.new_value), ("delete", 10, None))
        self.assertEqual(entry.configuration_id, deleted.pk)

    def test_write_after_delete_continues_numbering(self):
        write_config(MAX_RESULTS, 10)
        write_config(MAX_RESULTS, 20)
        delete_config(MAX_RESULTS)

        record = write_config(MAX_RESULTS, 30)
        self.assertEqual(record.version, 3)
        self.assertEqual(get_config_history(WORKSPACE).entries[0].change_type, "create")

    def test_delete_of_inactive_scope_fails(self):
        with self.assertRaises(NotFoundError):
            delete_config(MAX_RESULTS)


class InvariantTests(ConfigStoreTestCase):
    def test_versions_are_gapless_and_history_is_complete(self):
        threshold = Scope(WORKSPACE, "search_config", "similarity_threshold")
        write_config(MAX_RESULTS, 10)
        write_config(threshold, 0.5)
        write_config(MAX_RESULTS, 20)
        rollback_config(MAX_RESULTS, 1)
        bulk_update_config(WORKSPACE, "production", [("search_config", "max_results", 15), ("search_config", "similarity_threshold", 0.6)])
        write_config(MAX_RESULTS, 25)
        rollback_config(threshold, 1)

        for scope in (MAX_RESULTS, threshold):
            versions = self.versions(scope)
            self.assertEqual(versions, list(range(1, len(versions) + 1)))
            self.assertSingleActive(scope)
            history = ConfigurationHistory.objects.filter(
                change_type__in=RECORD_CHANGES,
                workspace_id=scope.workspace_id,
                config_category=scope.category,
                config_key=scope.key,
                environment=scope.environment,
            )
            self.assertEqual(history.count(), len(versions))

        self.assertEqual(self.versions(MAX_RESULTS), [1, 2, 3, 4, 5])
        self.assertEqual(self.assertSingleActive(threshold).value, 0.5)

    def test_every_record_has_one_originating_entry(self):
        write_config(MAX_RESULTS, 10)
        write_config(MAX_RESULTS, 20)
        rollback_config(MAX_RESULTS, 1)
        for record in ConfigurationRecord.objects.all():
            self.assertEqual(record.history_entries.filter(change_type__in=RECORD_CHANGES).count(), 1)

    def test_history_entries_are_immutable(self):
        write_config(MAX_RESULTS, 10)
        entry = ConfigurationHistory.objects.get()
        entry.new_value = 99
        with self.assertRaises(RuntimeError):
            entry.save()

        stamped = ConfigurationHistory.objects.filter(pk=entry.pk).stamp_applied(timezone.now())
        self.assertEqual(stamped, 1)
        self.assertIsNotNone(ConfigurationHistory.objects.get(pk=entry.pk).applied_at)


class BulkUpdateTests(ConfigStoreTestCase):
    def test_all_updates_commit_together(self):
        write_config(MAX_RESULTS, 10)
        result = bulk_update_config(
            WORKSPACE,
            "production",
            [
                ConfigUpdate("search_config", "max_results", 20),
                {"category": "search_config", "key": "similarity_threshold", "value": 0.8},
                ("model_params", "temperature", 0.3),
            ],
            actor="erin",
            reason="tuning",
        )
        self.assertEqual(result.updated_count, 3)
        self.assertEqual([r.version for r in result.records], [2, 1, 1])
        self.assertEqual(
            list(ConfigurationHistory.objects.order_by("id").values_list("change_type", flat=True)),
            ["create", "update", "create", "create"],
        )
        self.assertTrue(all(e.change_reason == "tuning" for e in get_config_history(WORKSPACE, changed_by="erin").entries))

    def test_one_invalid_update_rejects_the_whole_batch(self):
        write_config(MAX_RESULTS, 10)
        updates = [
            ("search_config", "max_results", 20),
            ("search_config", "similarity_threshold", 1.5),
            ("model_params", "temperature", 0.3),
        ]
        with self.assertRaises(ValidationError) as ctx:
            bulk_update_config(WORKSPACE, "production", updates)

        self.assertEqual(
            ctx.exception.failures,
            [("search_config", "similarity_threshold", "Similarity threshold must be between 0 and 1")],
        )
        self.assertEqual(self.versions(MAX_RESULTS), [1])
        self.assertEqual(ConfigurationRecord.objects.count(), 1)
        self.assertEqual(ConfigurationHistory.objects.count(), 1)

    def test_duplicate_keys_are_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            bulk_update_config(
                WORKSPACE,
                "production",
                [("search_config", "max_results", 20), ("search_config", "max_results", 30)],
            )
        self.assertIn("Duplicate", ctx.exception.errors[0])
        self.assertFalse(ConfigurationRecord.objects.exists())

    def test_empty_and_oversized_batches_are_rejected(self):
        with self.assertRaises(ValidationError):
            bulk_update_config(WORKSPACE, "production", [])
        with override_settings(CONFIG_BULK_MAX_ITEMS=1):
            with self.assertRaises(ValidationError):
                bulk_update_config(
                    WORKSPACE,
                    "production",
                    [("search_config", "max_results", 20), ("model_params", "temperature", 0.3)],
                )

    @override_settings(CONFIG_WRITE_RETRY_ATTEMPTS=2)
    def test_write_failure_rolls_back_every_key(self):
        threshold = Scope(WORKSPACE, "search_config", "similarity_threshold")
        write_config(MAX_RESULTS, 10)
        write_config(threshold, 0.5)
        real_next_version = services._next_version

        def conflict_on_threshold(scope):
            if scope.key == "similarity_threshold":
                return 1
            return real_next_version(scope)

        with mock.patch("configuration.services._next_version", side_effect=conflict_on_threshold):
            with self.assertRaises(VersionConflictError):
                bulk_update_config(
                    WORKSPACE,
                    "production",
                    [
                        ("search_config", "max_results", 20),
                        ("search_config", "similarity_threshold", 0.6),
                        ("model_params", "temperature", 0.3),
                    ],
                )

        self.assertEqual(self.versions(MAX_RESULTS), [1])
        self.assertEqual(self.versions(threshold), [1])
        self.assertEqual(self.assertSingleActive(MAX_RESULTS).value, 10)
        self.assertFalse(ConfigurationRecord.objects.filter(config_category="model_params").exists())


class ReadTests(ConfigStoreTestCase):
    def test_get_by_version_and_list_versions(self):
        write_config(MAX_RESULTS, 10)
        write_config(MAX_RESULTS, 20)
        self.assertEqual(get_config_version(MAX_RESULTS, 1).value, 10)
        self.assertEqual([r.version for r in list_config_versions(MAX_RESULTS)], [2, 1])
        with self.assertRaises(VersionNotFoundError):
            get_config_version(MAX_RESULTS, 3)

    def test_history_filters_and_pagination(self):
        write_config(MAX_RESULTS, 10, actor="alice")
        write_config(MAX_RESULTS, 20, actor="bob")
        write_config(Scope(WORKSPACE, "model_params", "temperature"), 0.4, actor="alice")
        write_config(Scope("ws-2", "model_params", "temperature"), 0.4, actor="alice")

        page = get_config_history(WORKSPACE, limit=2)
        self.assertEqual(page.total, 3)
        self.assertEqual(len(page.entries), 2)
        self.assertEqual(page.entries[0].config_category, "model_params")

        second = get_config_history(WORKSPACE, limit=2, offset=2)
        self.assertEqual([e.new_value for e in second.entries], [10])

        self.assertEqual(get_config_history(WORKSPACE, changed_by="alice").total, 2)
        self.assertEqual(get_config_history(WORKSPACE, key="max_results").total, 2)
        self.assertEqual(get_config_history(WORKSPACE, change_type="update").total, 1)
        self.assertEqual(get_config_history(WORKSPACE, category="model_params").total, 1)
        self.assertEqual(get_config_history(WORKSPACE, environment="staging").total, 0)

        now = timezone.now()
        self.assertEqual(get_config_history(WORKSPACE, changed_since=now + timedelta(minutes=1)).total, 0)
        self.assertEqual(get_config_history(WORKSPACE, changed_until=now + timedelta(minutes=1)).total, 3)
