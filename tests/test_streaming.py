"""Tests for chunked history traversal."""

import math

import pytest

from retime import streaming
from retime.config import config_from_mapping
from retime.memory import MemoryMonitor, MemorySample
from retime.progress import RecordingProgress
from retime.repo import GitExecutor
from retime.streaming import (
    GiB,
    MiB,
    MAX_CONCURRENCY,
    ChunkEvent,
    EndEvent,
    HistoryFilter,
    StreamingProcessor,
    configure_for_system,
)


class TestProcessStreaming:
    def test_250_commits_in_chunks_of_100(self, fake_history):
        sizes = []
        processor = StreamingProcessor(fake_history(250), chunk_size=100)

        result = processor.process_streaming(lambda chunk, ctx: sizes.append(len(chunk)))

        assert sizes == [100, 100, 50]
        assert result.total_processed == 250
        assert result.total_errors == 0
        assert [c.index for c in result.chunks] == [1, 2, 3]

    @pytest.mark.parametrize("length,chunk_size", [(1, 1), (7, 3), (10, 10), (10, 11), (0, 5), (99, 1)])
    def test_visits_ceil_chunks(self, fake_history, length, chunk_size):
        processor = StreamingProcessor(fake_history(length), chunk_size=chunk_size)

        result = processor.process_streaming(lambda chunk, ctx: len(chunk))

        assert len(result.chunks) == math.ceil(length / chunk_size)
        assert result.total_processed == length
        assert all(c.size > 0 for c in result.chunks)

    def test_context_counts_commits_before_chunk(self, fake_history):
        contexts = []
        processor = StreamingProcessor(fake_history(25), chunk_size=10)

        processor.process_streaming(lambda chunk, ctx: contexts.append(ctx))

        assert [(c.chunk_index, c.processed_before) for c in contexts] == [(1, 0), (2, 10), (3, 20)]

    def test_chunk_size_override(self, fake_history):
        processor = StreamingProcessor(fake_history(30), chunk_size=100)
        result = processor.process_streaming(lambda chunk, ctx: None, chunk_size=7)
        assert [c.size for c in result.chunks] == [7, 7, 7, 7, 2]

    def test_failure_stops_before_next_fetch(self, fake_history):
        history = fake_history(50)
        processor = StreamingProcessor(history, chunk_size=10)

        def transform(chunk, ctx):
            if ctx.chunk_index == 2:
                raise ValueError("bad chunk")

        with pytest.raises(ValueError, match="bad chunk"):
            processor.process_streaming(transform)

        assert history.log_calls == [(10, 0), (10, 10)]

    def test_continue_on_error_records_failures(self, fake_history):
        processor = StreamingProcessor(fake_history(50), chunk_size=10)

        def transform(chunk, ctx):
            if ctx.chunk_index in (2, 4):
                raise ValueError(f"chunk {ctx.chunk_index} broke")
            return len(chunk)

        result = processor.process_streaming(transform, continue_on_error=True)

        assert result.total_errors == 2
        assert [e.index for e in result.errors] == [2, 4]
        assert result.errors[0].error == "chunk 2 broke"
        assert result.total_processed == 30

    def test_progress_reports_totals(self, fake_history):
        history = fake_history(20)
        progress = RecordingProgress()
        processor = StreamingProcessor(history, chunk_size=10, progress=progress)

        processor.process_streaming(lambda chunk, ctx: None)

        assert history.count_calls == 1
        assert progress.steps("start") == ["stream"]
        assert progress.steps("complete") == ["stream"]
        updates = [e for e in progress.events if e[0] == "update"]
        assert [u[1] for u in updates] == ["50", "100"]
        assert updates[-1][2].startswith("20/20 commits")

    def test_no_count_without_progress(self, fake_history):
        history = fake_history(5)
        StreamingProcessor(history).process_streaming(lambda chunk, ctx: None)
        assert history.count_calls == 0

    def test_invalid_chunk_size(self, fake_history):
        with pytest.raises(ValueError):
            StreamingProcessor(fake_history(1), chunk_size=0)


class TestStreamAndCollect:
    def test_stream_ends_with_one_end_event(self, fake_history):
        processor = StreamingProcessor(fake_history(25), chunk_size=10)

        events = list(processor.create_stream())

        assert [type(e) for e in events] == [ChunkEvent, ChunkEvent, ChunkEvent, EndEvent]
        assert [e.processed for e in events[:-1]] == [10, 20, 25]
        assert events[-1] == EndEvent(chunks=3, processed=25)

    def test_empty_history_stream(self, fake_history):
        events = list(StreamingProcessor(fake_history(0)).create_stream())
        assert events == [EndEvent(chunks=0, processed=0)]

    def test_stream_is_lazy(self, fake_history):
        history = fake_history(100)
        stream = StreamingProcessor(history, chunk_size=10).create_stream()

        next(stream)

        assert history.log_calls == [(10, 0)]

    def test_collect_is_newest_first(self, fake_history):
        commits = StreamingProcessor(fake_history(12), chunk_size=5).collect()
        assert [c.subject for c in commits[:2]] == ["commit 12", "commit 11"]
        assert len(commits) == 12

    def test_real_repository(self, git_repo):
        executor = GitExecutor(git_repo)
        for i in range(4):
            executor.commit(message=f"Streaming test commit {i}", date=f"2024-05-0{i + 1}")

        commits = StreamingProcessor(executor, chunk_size=2).collect()
        ranged = StreamingProcessor(executor, chunk_size=2).collect(history=HistoryFilter(revision="HEAD~2..HEAD"))

        assert len(commits) == 5
        assert commits[0].subject == "Streaming test commit 3"
        assert [c.index for c in commits] == [0, 1, 2, 3, 4]
        assert [c.subject for c in ranged] == ["Streaming test commit 3", "Streaming test commit 2"]

    @pytest.mark.parametrize(
        "subject",
        ["Release\x0cnotes for the week", "Split\u2028line subject", "Group\x1dand record\x1eseparators"],
    )
    def test_subject_with_line_breaking_characters(self, git_repo, git, subject):
        git(git_repo, "commit", "--allow-empty", "-q", "-m", subject)
        git(git_repo, "commit", "--allow-empty", "-q", "-m", "Plain follow up commit")

        commits = StreamingProcessor(GitExecutor(git_repo), chunk_size=2).collect()

        assert [c.subject for c in commits] == ["Plain follow up commit", subject, "Initial commit"]
        assert [c.index for c in commits] == [0, 1, 2]
        assert all(len(c.hash) == 40 for c in commits)


class TestMemoryRelief:
    @staticmethod
    def _sampler(history, high_before_fetch):
        def sample():
            used = 900 if len(history.log_calls) in high_before_fetch else 100
            return MemorySample(timestamp=0.0, heap_used=used, heap_total=10_000, rss=used)

        return sample

    def test_one_collection_while_above_threshold(self, fake_history):
        history = fake_history(1000)
        monitor = MemoryMonitor(sampler=self._sampler(history, range(10_000)))
        processor = StreamingProcessor(history, chunk_size=10, memory_threshold=500, monitor=monitor)

        processor.process_streaming(lambda chunk, ctx: None)

        assert monitor.get_stats().gc_runs == 1
        assert not monitor.is_monitoring

    def test_rearms_after_dropping_below_threshold(self, fake_history):
        history = fake_history(20)
        # fetches 0 and 1 form one excursion, fetch 3 starts another
        monitor = MemoryMonitor(sampler=self._sampler(history, {0, 1, 3}))
        processor = StreamingProcessor(history, chunk_size=5, memory_threshold=500, monitor=monitor)

        processor.process_streaming(lambda chunk, ctx: None)

        assert monitor.get_stats().gc_runs == 2

    def test_respects_disabled_gc(self, fake_history, caplog):
        history = fake_history(1000)
        monitor = MemoryMonitor(sampler=self._sampler(history, range(10_000)), enable_gc=False)
        processor = StreamingProcessor(history, chunk_size=10, memory_threshold=500, monitor=monitor)

        with caplog.at_level("WARNING", logger="retime.streaming"):
            processor.process_streaming(lambda chunk, ctx: None)

        assert monitor.get_stats().gc_runs == 0
        assert len([r for r in caplog.records if "high memory usage" in r.message]) == 1


class TestConfigureForSystem:
    def test_more_memory_never_smaller(self):
        small = configure_for_system(total_memory=2 * GiB, available_memory=1 * GiB, cpu_cores=2)
        large = configure_for_system(total_memory=32 * GiB, available_memory=16 * GiB, cpu_cores=16)

        assert large.chunk_size > small.chunk_size
        assert large.memory_threshold > small.memory_threshold
        assert small.recommended_concurrency <= MAX_CONCURRENCY
        assert large.recommended_concurrency <= MAX_CONCURRENCY

    def test_monotonic_across_tiers(self):
        previous = None
        for available in (GiB // 2, GiB, 2 * GiB, 3 * GiB, 4 * GiB, 8 * GiB, 64 * GiB):
            s = configure_for_system(available_memory=available)
            if previous is not None:
                assert s.chunk_size >= previous.chunk_size
                assert s.memory_threshold >= previous.memory_threshold
            previous = s

    def test_concurrency_at_least_one(self):
        assert configure_for_system(cpu_cores=0).recommended_concurrency == 1

    def test_processor_applies_settings(self, fake_history):
        processor = StreamingProcessor(fake_history(1))
        settings = processor.configure_for_system(total_memory=2 * GiB, available_memory=1 * GiB, cpu_cores=2)

        assert processor.chunk_size == settings.chunk_size == 50
        assert processor.memory_threshold == settings.memory_threshold


class TestFromConfig:
    def test_sections_are_applied(self, fake_history):
        cfg = config_from_mapping(
            {
                "streaming": {"chunk_size": 25, "memory_threshold_mb": 64},
                "memory": {"sample_interval": 0.5, "enable_gc": False},
            }
        )

        processor = StreamingProcessor.from_config(fake_history(3), cfg)

        assert processor.chunk_size == 25
        assert processor.memory_threshold == 64 * MiB
        assert processor.monitor.sample_interval == 0.5
        assert not processor.monitor.enable_gc

    def test_auto_configure(self, fake_history, monkeypatch):
        monkeypatch.setattr(
            streaming,
            "detect_system_resources",
            lambda: {"total_memory": 64 * GiB, "available_memory": 32 * GiB, "cpu_cores": 8},
        )
        cfg = config_from_mapping({"streaming": {"auto_configure": True}})

        processor = StreamingProcessor.from_config(fake_history(3), cfg)

        assert processor.chunk_size == 200
