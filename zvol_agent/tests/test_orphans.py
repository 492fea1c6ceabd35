import threading
import unittest

from zvol_agent.models.resources import InconsistencyKind, VolumeRef
from zvol_agent.orphans import CLEANUP_ORDER
from zvol_agent.tests.fakes import GiB, ROOT, FakeAppliance, err, make_backend


def path(entity, idx=0, root=ROOT):
    return VolumeRef(entity_id=entity, disk_index=idx, dataset_root=root).dataset_path


class OrphanDetectionTests(unittest.TestCase):
    def setUp(self):
        self.fake = FakeAppliance()
        self.backend = make_backend(self.fake)
        self.orphans = self.backend.orphans
        self.healthy = self.backend.volumes.create(
            VolumeRef(entity_id=100, disk_index=0, dataset_root=ROOT, size_bytes=GiB)
        )

    def kinds(self, found):
        return [(f.kind, f.resource_id) for f in found]

    def test_healthy_storage_has_no_orphans(self):
        self.assertEqual(self.orphans.detect(include_datasets=True), [])

    def test_mapping_without_export_is_reported_exactly(self):
        self.fake.add_targetextent(extent_id=77, target=1)
        te_id = max(self.fake.targetextents)

        found = self.orphans.detect()

        self.assertEqual(self.kinds(found), [(InconsistencyKind.MAPPING_WITHOUT_EXPORT, str(te_id))])
        self.assertEqual(found[0].resource_kind, "mapping")

    def test_export_without_dataset(self):
        ext_id = self.fake.add_extent(path(200))
        found = self.orphans.detect()
        self.assertEqual(self.kinds(found), [(InconsistencyKind.EXPORT_WITHOUT_DATASET, str(ext_id))])

    def test_datasets_only_on_request(self):
        self.fake.add_dataset(path(300), volsize=GiB)
        self.assertEqual(self.orphans.detect(), [])
        self.assertEqual(
            self.kinds(self.orphans.detect(include_datasets=True)),
            [(InconsistencyKind.DATASET_WITHOUT_EXPORT, path(300))],
        )

    def test_filesystems_and_parents_are_not_dataset_orphans(self):
        self.fake.add_dataset(f"{ROOT}/isos", type="FILESYSTEM")
        self.fake.add_dataset(f"{ROOT}/group", type="VOLUME")
        self.fake.add_dataset(f"{ROOT}/group/vm-400-disk-0", volsize=GiB)

        found = self.orphans.detect(include_datasets=True)

        self.assertEqual(self.kinds(found), [
            (InconsistencyKind.DATASET_WITHOUT_EXPORT, f"{ROOT}/group/vm-400-disk-0"),
        ])

    def test_other_roots_are_ignored(self):
        """Exports under another root sharing the target are neither orphans nor their mappings."""
        self.fake.add_dataset("tank/other", type="FILESYSTEM")
        self.fake.add_dataset(path(500, root="tank/other"), volsize=GiB)
        foreign_ext = self.fake.add_extent(path(500, root="tank/other"))
        self.fake.add_targetextent(foreign_ext, target=1)
        self.fake.add_extent(path(501, root="tank/elsewhere"))

        self.assertEqual(self.orphans.detect(include_datasets=True), [])


class OrphanCleanupTests(unittest.TestCase):
    def setUp(self):
        self.fake = FakeAppliance()
        self.backend = make_backend(self.fake)
        self.orphans = self.backend.orphans
        self.ghost_mapping = self.fake.add_targetextent(extent_id=77, target=1)
        self.ghost_extent = self.fake.add_extent(path(200))
        self.fake.add_dataset(path(300), volsize=GiB)
        self.fake.calls.clear()

    def test_cleanup_order(self):
        outcomes = self.orphans.cleanup(include_datasets=True)

        self.assertEqual([(o.kind, o.resource_id, o.success) for o in outcomes], [
            ("mapping_without_export", str(self.ghost_mapping), True),
            ("export_without_dataset", str(self.ghost_extent), True),
            ("dataset_without_export", path(300), True),
        ])
        self.assertEqual(
            self.fake.mutating_calls(),
            ["iscsi.targetextent.delete", "iscsi.extent.delete", "pool.dataset.delete"],
        )
        self.assertEqual(self.orphans.detect(include_datasets=True), [])
        self.assertEqual(self.backend.events.events()[-1].operation, "orphan_cleanup")

    def test_cleanup_leaves_datasets_by_default(self):
        self.orphans.cleanup()
        self.assertIn(path(300), self.fake.datasets)

    def test_cleanup_continues_past_failures(self):
        self.fake.fail("iscsi.targetextent.delete", err("EINVAL", "[EINVAL] in use"))

        outcomes = self.orphans.cleanup()

        self.assertEqual([o.success for o in outcomes], [False, True])
        self.assertIn("in use", outcomes[0].error)
        self.assertEqual(self.fake.extents, {})

    def test_already_removed_counts_as_success(self):
        self.fake.fail("iscsi.extent.delete", err("ENOENT", "Extent does not exist"))
        outcomes = self.orphans.cleanup()
        self.assertTrue(all(o.success for o in outcomes))

    def test_locked_volumes_are_left_alone(self):
        with self.backend.locks.hold(path(300)), self.backend.locks.hold(path(200)):
            outcomes = self.orphans.cleanup(include_datasets=True)

        self.assertIn(path(300), self.fake.datasets)
        self.assertIn(self.ghost_extent, self.fake.extents)
        self.assertEqual(self.fake.targetextents, {})
        self.assertEqual([(o.resource_id, o.success) for o in outcomes], [
            (str(self.ghost_mapping), True),
            (str(self.ghost_extent), False),
            (path(300), False),
        ])
        self.assertIn("operation in progress", outcomes[2].error)
        self.assertNotIn("pool.dataset.delete", self.fake.methods())

    def test_lock_held_by_another_thread_protects_dataset(self):
        """A volume whose lock is held in another thread keeps its dataset."""
        held = threading.Event()
        release = threading.Event()

        def creator():
            with self.backend.locks.hold(path(300)):
                held.set()
                release.wait(5)

        worker = threading.Thread(target=creator)
        worker.start()
        held.wait(5)
        try:
            outcomes = self.orphans.cleanup(include_datasets=True)
        finally:
            release.set()
            worker.join(5)

        self.assertIn(path(300), self.fake.datasets)
        self.assertFalse(outcomes[-1].success)

    def test_export_whose_dataset_appeared_is_skipped(self):
        resources = self.orphans.fetch()
        self.fake.add_dataset(path(200), volsize=GiB)

        outcomes = self.orphans.cleanup(resources=resources)

        skipped = [o for o in outcomes if o.skipped]
        self.assertEqual([o.resource_id for o in skipped], [str(self.ghost_extent)])
        self.assertIn(self.ghost_extent, self.fake.extents)
        self.assertNotIn("iscsi.extent.delete", self.fake.methods())

    def test_dataset_exported_meanwhile_is_skipped(self):
        resources = self.orphans.fetch()
        self.fake.add_extent(path(300))

        outcomes = self.orphans.cleanup(include_datasets=True, resources=resources)

        self.assertTrue(outcomes[-1].skipped)
        self.assertIn(path(300), self.fake.datasets)
        self.assertNotIn("pool.dataset.delete", self.fake.methods())

    def test_mapping_whose_export_appeared_is_skipped(self):
        resources = self.orphans.fetch()
        self.fake.extents[77] = {"id": 77, "name": "vm-600-disk-0", "type": "DISK", "disk": f"zvol/{path(600)}"}

        outcomes = self.orphans.cleanup(resources=resources)

        self.assertTrue(outcomes[0].skipped)
        self.assertIn(self.ghost_mapping, self.fake.targetextents)

    def test_cleanup_order_constant(self):
        self.assertEqual(CLEANUP_ORDER[0], InconsistencyKind.MAPPING_WITHOUT_EXPORT)
        self.assertEqual(CLEANUP_ORDER[-1], InconsistencyKind.DATASET_WITHOUT_EXPORT)


if __name__ == "__main__":
    unittest.main()
