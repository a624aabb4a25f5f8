"""
Integration tests for the frame path and the diarization path.
"""

import asyncio
import threading
import time

import numpy as np
import pytest

from facevoice.config import ClusteringConfig, PairingConfig, ScoringConfig, TrackingConfig
from facevoice.services.alignment import REFERENCE_LANDMARKS_112
from facevoice.services.attribution import AttributionWorker
from facevoice.services.face_tracker import FaceTracker
from facevoice.services.pairing import VoiceSegment
from facevoice.services.pipeline import FacePipeline, SnapshotChannel
from facevoice.services.score_buffer import ScoreSeries
from facevoice.services.scoring_pool import ScoringSlotPool
from facevoice.services.speaker_clustering import OnlineSpeakerClustering
from facevoice.services.speaking_scheduler import SpeakingScheduler

FPS = 25.0


def _pipeline(scorer_factory=None, clock=None, embedder=None, frames_per_update=4, max_slots=4):
    tracker = FaceTracker(TrackingConfig())
    scheduler = None
    if scorer_factory is not None:
        config = ScoringConfig(frames_per_update=frames_per_update, warm_slots=1, max_slots=max_slots)
        scheduler = SpeakingScheduler(ScoringSlotPool(scorer_factory, config, clock=clock), config)
    return FacePipeline(
        tracker=tracker,
        scheduler=scheduler,
        pairing_config=PairingConfig(frame_rate=FPS),
        embedder=embedder,
    )


def _voice(start, end, embedding=(1.0, 0.0, 0.0), confidence=1.0):
    return VoiceSegment(
        start_time=start,
        end_time=end,
        embedding=np.array(embedding, dtype=np.float32),
        confidence=confidence,
    )


class TestSnapshotChannel:
    """Tests for the latest-value snapshot channel."""

    def test_empty(self):
        channel = SnapshotChannel()
        assert channel.latest() == {}
        assert channel.frame_index is None

    def test_publish_replaces_mapping(self):
        channel = SnapshotChannel()
        first = ScoreSeries(0, (0,), (0.5,), FPS)
        channel.publish(0, {0: first})
        channel.publish(4, {1: ScoreSeries(1, (4,), (0.2,), FPS)})

        assert list(channel.latest()) == [1]
        assert channel.frame_index == 4

    def test_readers_get_copies(self):
        channel = SnapshotChannel()
        channel.publish(0, {0: ScoreSeries(0, (0,), (0.5,), FPS)})
        view = channel.latest()
        view.clear()
        assert list(channel.latest()) == [0]


class TestFacePipeline:
    """Tests for FacePipeline."""

    @pytest.mark.asyncio
    async def test_scores_on_cadence(self, scorer_factory, clock, make_detection, sample_image):
        """Test scoring runs on frames 0, 4 and 8 and snapshots follow."""
        pipeline = _pipeline(scorer_factory, clock)

        cycles = []
        for frame_index in range(9):
            result = await pipeline.process_frame(frame_index, sample_image, [make_detection()])
            if result.scoring is not None:
                cycles.append(frame_index)

        assert cycles == [0, 4, 8]
        assert pipeline.frames_processed == 9
        assert pipeline.last_frame_index == 8

        series = pipeline.snapshots.latest()[0]
        assert series.frame_indices == (0, 4, 8)
        assert series.probabilities == (0.7, 0.7, 0.7)
        assert pipeline.snapshots.frame_index == 8

    @pytest.mark.asyncio
    async def test_no_image_tracks_only(self, scorer_factory, clock, make_detection):
        pipeline = _pipeline(scorer_factory, clock)
        result = await pipeline.process_frame(0, None, [make_detection()])

        assert result.scoring is None
        assert result.tracking.new_track_ids == [0]
        assert pipeline.snapshots.latest() == {}

    @pytest.mark.asyncio
    async def test_without_scheduler(self, make_detection, sample_image):
        pipeline = _pipeline()
        result = await pipeline.process_frame(0, sample_image, [make_detection()])
        assert result.scoring is None
        assert result.tracking.num_active_tracks == 1

    @pytest.mark.asyncio
    async def test_embedder_fills_missing_embeddings(self, mocker, make_detection, sample_image):
        """Test detections with landmarks are aligned and embedded."""
        embedder = mocker.MagicMock(return_value=np.array([0.0, 3.0, 0.0, 4.0]))
        pipeline = _pipeline(embedder=embedder)
        landmarks = REFERENCE_LANDMARKS_112 + np.array([260.0, 180.0])

        await pipeline.process_frame(0, sample_image, [make_detection(landmarks=landmarks)])

        embedder.assert_called_once()
        crop = embedder.call_args.args[0]
        assert crop.shape == (112, 112, 3)
        np.testing.assert_allclose(pipeline.tracker.get(0).embedding, [0.0, 0.6, 0.0, 0.8], rtol=1e-6)

    @pytest.mark.asyncio
    async def test_existing_embedding_not_recomputed(self, mocker, make_detection, sample_image):
        embedder = mocker.MagicMock(return_value=np.ones(4))
        pipeline = _pipeline(embedder=embedder)
        detection = make_detection(embedding=np.array([1.0, 0.0]), landmarks=REFERENCE_LANDMARKS_112)

        await pipeline.process_frame(0, sample_image, [detection])

        embedder.assert_not_called()

    @pytest.mark.asyncio
    async def test_embedder_failure_does_not_stop_tracking(self, mocker, make_detection, sample_image):
        embedder = mocker.MagicMock(side_effect=RuntimeError("embedder offline"))
        pipeline = _pipeline(embedder=embedder)

        result = await pipeline.process_frame(0, sample_image, [make_detection(landmarks=REFERENCE_LANDMARKS_112)])

        assert result.tracking.new_track_ids == [0]
        assert pipeline.tracker.get(0).embedding is None

    @pytest.mark.asyncio
    async def test_degenerate_landmarks_skipped(self, mocker, make_detection, sample_image):
        embedder = mocker.MagicMock(return_value=np.ones(4))
        pipeline = _pipeline(embedder=embedder)
        landmarks = np.full((5, 2), 100.0)

        await pipeline.process_frame(0, sample_image, [make_detection(landmarks=landmarks)])

        embedder.assert_not_called()
        assert pipeline.tracker.get(0) is not None

    @pytest.mark.asyncio
    async def test_closed_pipeline_rejects_frames(self, make_detection):
        pipeline = _pipeline()
        pipeline.close()
        assert pipeline.is_closed
        with pytest.raises(RuntimeError):
            await pipeline.process_frame(0, None, [make_detection()])

    @pytest.mark.asyncio
    async def test_overlapping_frames_are_serialized(self, mocker, clock, make_detection, sample_image):
        """Test concurrent frames never share a scorer and keep their samples in order."""

        class SlowFirstCallScorer:
            def __init__(self):
                self._lock = threading.Lock()
                self.calls = 0
                self.in_flight = 0
                self.max_in_flight = 0

            def score(self, region, image):
                with self._lock:
                    self.calls += 1
                    first = self.calls == 1
                    self.in_flight += 1
                    self.max_in_flight = max(self.max_in_flight, self.in_flight)
                if first:
                    time.sleep(0.3)
                with self._lock:
                    self.in_flight -= 1
                return 0.8

        scorer = SlowFirstCallScorer()
        factory = mocker.MagicMock(return_value=scorer)
        pipeline = _pipeline(factory, clock, frames_per_update=8, max_slots=1)

        first, second = await asyncio.gather(
            pipeline.process_frame(8, sample_image, [make_detection()]),
            pipeline.process_frame(16, sample_image, [make_detection()]),
        )

        assert first.scoring.scored == {0: 0.8}
        assert second.scoring.scored == {0: 0.8}
        assert scorer.max_in_flight == 1
        assert [s.frame_index for s in pipeline.tracker.get(0).scores] == [8, 16]
        assert pipeline.last_frame_index == 16

    @pytest.mark.asyncio
    async def test_repeated_frame_rejected_before_tracking(self, scorer_factory, clock, make_detection, sample_image):
        """Test a stale frame index changes neither tracks nor score buffers."""
        pipeline = _pipeline(scorer_factory, clock)
        await pipeline.process_frame(0, sample_image, [make_detection()])

        extra = [make_detection(), make_detection(x=0.05, y=0.6, w=0.1, h=0.1)]
        with pytest.raises(ValueError):
            await pipeline.process_frame(0, sample_image, extra)

        assert [t.track_id for t in pipeline.tracker.tracks] == [0]
        assert [s.frame_index for s in pipeline.tracker.get(0).scores] == [0]
        assert pipeline.frames_processed == 1

        result = await pipeline.process_frame(1, sample_image, extra)
        assert result.tracking.new_track_ids == [1]


class TestAttributionWorker:
    """Tests for the diarization path."""

    @pytest.fixture
    def snapshots(self):
        channel = SnapshotChannel()
        channel.publish(
            9,
            {
                0: ScoreSeries(0, tuple(range(10)), (0.9,) * 10, FPS),
                1: ScoreSeries(1, tuple(range(10)), (0.1,) * 10, FPS),
            },
        )
        return channel

    @pytest.fixture
    def worker(self, snapshots):
        return AttributionWorker(
            clustering=OnlineSpeakerClustering(ClusteringConfig()),
            snapshots=snapshots,
            pairing_config=PairingConfig(frame_rate=FPS, min_score=0.0),
        )

    def test_attribute_pairs_with_speaking_track(self, worker):
        """Test a segment lands on a new speaker and the face that was speaking."""
        attribution = worker.attribute(_voice(0.0, 0.4))

        assert attribution.cluster_id == "speaker-1"
        assert attribution.best_track_id == 0
        assert [c.track_id for c in attribution.candidates] == [0, 1]
        assert worker.association.best_track("speaker-1") == 0
        assert list(worker.history) == [attribution]

    def test_score_segment_leaves_clusters_alone(self, worker):
        candidates = worker.score_segment(_voice(0.0, 0.4))
        assert candidates[0].track_id == 0
        assert len(worker.clustering) == 0

    def test_no_overlap_means_no_track(self, worker):
        attribution = worker.attribute(_voice(30.0, 31.0))
        assert attribution.cluster_id == "speaker-1"
        assert attribution.best_track_id is None
        assert attribution.candidates == []

    def test_periodic_consolidation(self, mocker, snapshots):
        clustering = OnlineSpeakerClustering()
        spy = mocker.spy(clustering, "consolidate")
        worker = AttributionWorker(clustering, snapshots, consolidate_every=2)

        worker.attribute(_voice(0.0, 0.2))
        assert spy.call_count == 0
        worker.attribute(_voice(0.2, 0.4))
        assert spy.call_count == 1

    @pytest.mark.asyncio
    async def test_run_consumes_queue(self, worker):
        """Test queued segments are attributed by the background task."""
        worker.start()
        assert worker.is_running

        first = await worker.submit(_voice(0.0, 0.4))
        rejected = await worker.submit(_voice(0.0, 0.4, embedding=(1.0, 0.0)))  # wrong dimension
        second = await worker.submit(_voice(0.0, 0.4, embedding=(0.0, 1.0, 0.0)))
        await asyncio.wait_for(worker.segments.join(), timeout=5)

        assert (await first).cluster_id == "speaker-1"
        assert (await first).best_track_id == 0
        with pytest.raises(ValueError):
            await rejected
        assert (await second).cluster_id == "speaker-2"
        assert [a.cluster_id for a in worker.history] == ["speaker-1", "speaker-2"]
        assert worker.is_running

        await worker.stop()
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_submit_nowait_reports_full_queue(self, snapshots):
        worker = AttributionWorker(OnlineSpeakerClustering(), snapshots, queue_size=1)
        assert worker.submit_nowait(_voice(0.0, 0.2)) is not None
        assert worker.submit_nowait(_voice(0.2, 0.4)) is None

    @pytest.mark.asyncio
    async def test_stop_cancels_queued_segments(self, snapshots):
        """Test segments left in the queue are not awaited forever after stop."""
        worker = AttributionWorker(OnlineSpeakerClustering(), snapshots)
        future = worker.submit_nowait(_voice(0.0, 0.2))

        await worker.stop()

        assert future.cancelled()
        assert worker.segments.empty()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, worker):
        await worker.stop()
        assert not worker.is_running
