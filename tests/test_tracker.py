"""
End-to-end tests for the SkySpan block tracker.
"""
import pytest
import numpy as np

from skyspan import (
    CameraPose,
    FeatureType,
    SkySpanConfig,
    SkySpanTracker,
    TrackerContractError,
    project_point,
)


class TestTrackerBasics:
    """Construction, state and reset."""

    def test_initialization(self):
        tracker = SkySpanTracker()
        assert tracker.block_count == 0
        assert len(tracker.objects) == 0

    def test_dict_config(self):
        tracker = SkySpanTracker(config={"object_max_unreal_blocks": 3})
        assert tracker.config.object_max_unreal_blocks == 3

    def test_invalid_config_raises(self):
        with pytest.raises(ValueError):
            SkySpanTracker(config=SkySpanConfig(frame_rate=0.0))

    def test_empty_blocks(self, video_config):
        tracker = SkySpanTracker(video_config)
        for block_id in range(1, 4):
            assert tracker.update(block_id, []) == []
        assert tracker.get_state()["block_count"] == 3
        assert tracker.finalize() == []

    def test_blocks_must_increase(self, video_config, make_detection):
        tracker = SkySpanTracker(video_config)
        tracker.update(5, [make_detection(100, 100)])
        with pytest.raises(TrackerContractError):
            tracker.update(5, [])

    def test_reset(self, video_config, make_detection):
        tracker = SkySpanTracker(video_config)
        tracker.update(1, [make_detection(100, 100)])
        tracker.reset()

        assert tracker.get_state()["n_objects"] == 0
        tracker.update(1, [make_detection(100, 100)])
        assert list(tracker.objects.keys()) == [1]


class TestEndToEnd:
    """A hovering drone watching one small moving animal."""

    def test_single_object_tracked_and_located(self, video_config, nadir_pose, flat_terrain, make_detection):
        tracker = SkySpanTracker(video_config, terrain=flat_terrain)
        boxes = [(95, 95), (105, 97), (115, 99)]

        for block_id, (x, y) in enumerate(boxes, start=1):
            tracker.update(block_id, [make_detection(x, y)], nadir_pose)

        assert len(tracker.objects) == 1
        obj = tracker.objects[1]
        assert obj.num_real_features() == 3
        assert all(f.object_id == obj.object_id for f in obj.features.values())
        assert obj.significant

        # One camera centre cannot triangulate, so line of sight locates it
        assert obj.triangulation is None
        assert obj.height_m == pytest.approx(0.0, abs=1e-3)
        assert obj.location_err_m < 1.0

        reports = tracker.finalize()
        assert len(reports) == 1
        assert reports[0].name == "A"
        assert reports[0].size_cm2 > 0

    def test_moving_drone_triangulates(self, video_config, flat_terrain, make_detection):
        """A hot spot 3m above the ground seen from a drone flying diagonally past it."""
        tracker = SkySpanTracker(video_config, terrain=flat_terrain)
        intrinsics = tracker.intrinsics
        target = np.array([10.0, 5.0, 53.0])

        for block_id in range(1, 11):
            pose = CameraPose(-10.0 + 2.0 * block_id, -10.0 + 2.0 * block_id, 120.0, pitch=90.0)
            u, v = project_point(target, pose, intrinsics)
            x, y = int(round(u)) - 15, int(round(v)) - 15
            tracker.update(block_id, [make_detection(x, y, width=30, height=30, num_pixels=400)], pose)

        assert len(tracker.objects) == 1
        obj = tracker.objects[1]
        assert obj.triangulation is not None and obj.triangulation.converged
        np.testing.assert_allclose(obj.triangulation.point, target, atol=0.5)
        assert obj.height_m == pytest.approx(3.0, abs=0.5)
        assert any(f.height_algorithm == "TRI" for f in obj.real_features())

    def _fly_tilted_past(self, config, flat_terrain, make_detection):
        """Drone flying diagonally with the camera 10 degrees off nadir, watching a spot 3m up."""
        tracker = SkySpanTracker(config, terrain=flat_terrain)
        target = np.array([10.0, 5.0, 53.0])
        for block_id in range(1, 11):
            pose = CameraPose(12.0 + 2.0 * block_id, -10.0 + 2.0 * block_id, 120.0, pitch=80.0)
            u, v = project_point(target, pose, tracker.intrinsics)
            x, y = int(round(u)) - 15, int(round(v)) - 15
            tracker.update(block_id, [make_detection(x, y, width=30, height=30, num_pixels=400)], pose)
        assert len(tracker.objects) == 1
        return tracker.objects[1], target

    def test_tilted_camera_triangulates(self, video_config, flat_terrain, make_detection):
        obj, target = self._fly_tilted_past(video_config, flat_terrain, make_detection)
        assert obj.triangulation is not None and obj.triangulation.converged
        np.testing.assert_allclose(obj.triangulation.point, target, atol=0.5)

    def test_camera_near_horizon_is_never_located(self, flat_terrain, make_detection):
        config = SkySpanConfig(object_min_duration_ms=50.0, frame_rate=30.0, min_camera_down_angle=85.0)
        obj, _ = self._fly_tilted_past(config, flat_terrain, make_detection)

        assert obj.num_real_features() == 10
        assert obj.triangulation is None
        assert obj.location_m is None
        for feature in obj.real_features():
            assert feature.height_algorithm != "TRI"
            assert feature.location_m is None

    def test_two_separate_objects(self, video_config, nadir_pose, flat_terrain, make_detection):
        tracker = SkySpanTracker(video_config, terrain=flat_terrain)
        for block_id in range(1, 5):
            tracker.update(block_id, [make_detection(100, 100), make_detection(400, 300)], nadir_pose)

        assert len(tracker.objects) == 2
        assert [obj.num_real_features() for obj in tracker.objects.values()] == [4, 4]
        assert sorted(r.name for r in tracker.finalize()) == ["A", "B"]

    def test_insignificant_blob_starts_nothing(self, video_config, nadir_pose, make_detection):
        tracker = SkySpanTracker(video_config)
        tracker.update(1, [make_detection(100, 100, num_pixels=3)], nadir_pose)
        assert len(tracker.objects) == 0
        assert len(tracker.features) == 1


class TestClaimExclusivity:
    """Every feature belongs to at most one object."""

    def test_overlapping_objects_share_nothing(self, video_config, nadir_pose, make_detection):
        tracker = SkySpanTracker(video_config)
        tracker.update(1, [make_detection(100, 100), make_detection(112, 100)], nadir_pose)
        assert len(tracker.objects) == 2

        # One blob where both objects expect to be
        tracker.update(2, [make_detection(106, 100)], nadir_pose)

        owners = [f.object_id for f in tracker.features.values() if f.block_id == 2 and f.is_real]
        assert len(owners) == 1 and owners[0] != 0
        real_claims = [
            obj.object_id for obj in tracker.objects.values()
            if obj.last_real_feature.block_id == 2
        ]
        assert real_claims == owners

    def test_comb_merges_fragments(self, video_config, nadir_pose, make_detection):
        tracker = SkySpanTracker(video_config)
        tracker.update(1, [make_detection(100, 100, width=14, height=14)], nadir_pose)
        tracker.update(2, [make_detection(100, 100, width=6, height=14),
                           make_detection(108, 100, width=6, height=14)], nadir_pose)

        assert len(tracker.objects) == 1
        block_two = [f for f in tracker.features.values() if f.block_id == 2]
        assert sorted(f.type.name for f in block_two) == ["CONSUMED", "REAL"]
        assert tracker.objects[1].last_real_feature.num_hot_pixels == 120

    def test_yolo_refuses_second_box(self, yolo_config, nadir_pose, make_detection):
        tracker = SkySpanTracker(yolo_config)
        tracker.update(1, [make_detection(100, 100, width=14, height=14)], nadir_pose)
        tracker.update(2, [make_detection(100, 100, width=6, height=14),
                           make_detection(108, 100, width=6, height=14)], nadir_pose)

        # The refused box starts its own object
        assert len(tracker.objects) == 2
        assert all(f.type == FeatureType.REAL for f in tracker.features.values())


class TestPersistence:
    """Objects survive brief dropouts, then stop for good."""

    def test_persistence_window(self, video_config, nadir_pose, make_detection):
        tracker = SkySpanTracker(video_config)
        max_unreal = video_config.object_max_unreal_blocks
        tracker.update(1, [make_detection(100, 100)], nadir_pose)
        obj = tracker.objects[1]

        for block_id in range(2, 2 + max_unreal):
            tracker.update(block_id, [], nadir_pose)
            assert obj.being_tracked
            assert obj.last_feature.block_id == block_id
            assert obj.last_feature.type == FeatureType.UNREAL

        tracker.update(2 + max_unreal, [], nadir_pose)
        assert not obj.being_tracked
        assert len(obj.features) == 1 + max_unreal

        # The same spot later starts a new object
        tracker.update(3 + max_unreal, [make_detection(100, 100)], nadir_pose)
        assert len(obj.features) == 1 + max_unreal
        assert len(tracker.objects) == 2

    def test_reacquired_after_dropout(self, video_config, nadir_pose, make_detection):
        tracker = SkySpanTracker(video_config)
        tracker.update(1, [make_detection(100, 100)], nadir_pose)
        tracker.update(2, [make_detection(100, 100)], nadir_pose)
        tracker.update(3, [], nadir_pose)
        tracker.update(4, [make_detection(100, 100)], nadir_pose)

        assert len(tracker.objects) == 1
        types = [f.type for f in tracker.objects[1].features.values()]
        assert types == [FeatureType.REAL, FeatureType.REAL, FeatureType.UNREAL, FeatureType.REAL]

    def test_images_do_not_persist(self, image_config, nadir_pose, make_detection):
        tracker = SkySpanTracker(image_config)
        tracker.update(1, [make_detection(100, 100)], nadir_pose)
        tracker.update(2, [], nadir_pose)
        assert not tracker.objects[1].being_tracked
        assert len(tracker.objects[1].features) == 1

    def test_block_gap_stops_tracking(self, video_config, nadir_pose, make_detection):
        tracker = SkySpanTracker(video_config)
        tracker.update(1, [make_detection(100, 100)], nadir_pose)
        tracker.update(10, [make_detection(100, 100)], nadir_pose)
        assert not tracker.objects[1].being_tracked
        assert len(tracker.objects) == 2

    def test_placeholders_do_not_count_as_significant_blocks(self, video_config, nadir_pose, make_detection):
        tracker = SkySpanTracker(video_config)
        for block_id in range(1, 4):
            tracker.update(block_id, [make_detection(100, 100)], nadir_pose)
        obj = tracker.objects[1]
        # Significant from the second frame on
        assert obj.num_sig_blocks == 2

        for block_id in range(4, 8):
            tracker.update(block_id, [], nadir_pose)
            assert obj.being_tracked
            assert obj.num_sig_blocks == 2
        assert obj.num_real_features() == 3
        assert obj.significant


class TestSignificanceHistory:
    """Once significant, an object stays reported."""

    def test_object_reported_after_losing_significance(self, nadir_pose, make_detection):
        config = SkySpanConfig(object_min_duration_ms=50.0, frame_rate=30.0, object_max_pixels=100)
        tracker = SkySpanTracker(config)
        history = []

        tracker.update(1, [make_detection(100, 100)], nadir_pose)
        tracker.update(2, [make_detection(100, 100)], nadir_pose)
        obj = tracker.objects[1]
        assert obj.significant
        history.append(obj.num_sig_blocks)

        # A much larger blob is claimed and breaks the pixel cap
        tracker.update(3, [make_detection(95, 95, width=20, height=20, num_pixels=150)], nadir_pose)
        assert obj.num_real_features() == 3
        assert not obj.significant
        history.append(obj.num_sig_blocks)

        for block_id in range(4, 6):
            tracker.update(block_id, [make_detection(95, 95, width=20, height=20, num_pixels=150)], nadir_pose)
            history.append(obj.num_sig_blocks)

        assert history == sorted(history)
        assert history[-1] == 1
        assert obj in tracker.objects.ever_significant_objects()

        reports = tracker.finalize()
        assert [r.object_id for r in reports] == [obj.object_id]
        assert reports[0].name == "A"
        assert reports[0].num_sig_blocks == 1
