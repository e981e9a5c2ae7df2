#!/usr/bin/env python3
"""
Pipeline tests for authorcov: per-project aggregation and multi-module
orchestration over Maven-style trees laid out in tmp_path.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest

from authorcov import (
    AuthorcovConfig,
    ManifestReportSink,
    ProjectAggregator,
    ProjectOrchestrator,
    Reactor,
    ReportGroup,
    FileFilter,
    SourceTreeError,
)


def _names(grouping):
    """period -> author -> [file names] for readable assertions"""
    return {
        period: {author: [f.name for f in files] for author, files in authors.items()}
        for period, authors in grouping.items()
    }


# ============================================================================
# AGGREGATION TESTS
# ============================================================================


class TestProjectAggregator:
    """Test tag -> normalize -> map -> resolve -> group for one project"""

    def test_single_tagged_source(self, java_tree, config, quiet_reporter):
        """One tagged source compiled to one class file"""
        java_tree.add_source("com/example/Foo.java", "2024/3/15", "Alice/team1")
        foo_class = java_tree.add_class("com/example/Foo.class")

        grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())

        assert grouping == {"2024年03月": {"Alice": [foo_class]}}

    def test_baseline_excludes_older_sources(self, java_tree, quiet_reporter):
        """Sources dated before the baseline are dropped"""
        java_tree.add_source("a/Old.java", "2024/3/15", "Alice")
        java_tree.add_source("a/New.java", "2024/4/2", "Bob")
        java_tree.add_class("a/Old.class")
        java_tree.add_class("a/New.class")

        config = AuthorcovConfig(baseline_date="2024-04-01", jobs=2)
        grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())

        assert _names(grouping) == {"2024年04月": {"Bob": ["New.class"]}}

    @pytest.mark.parametrize("baseline,expected", [
        ("2024/4/2", {"2024年04月": {"Bob": ["New.class"]}}),
        ("2024/4/3", {}),
    ])
    def test_baseline_is_inclusive(self, java_tree, quiet_reporter, baseline, expected):
        java_tree.add_source("a/New.java", "2024/4/2", "Bob")
        java_tree.add_class("a/New.class")

        config = AuthorcovConfig(baseline_date=baseline)
        grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())

        assert _names(grouping) == expected

    def test_unparsable_baseline_disables_filter(self, java_tree, quiet_reporter, caplog):
        java_tree.add_source("a/Old.java", "2001/1/1", "Alice")
        java_tree.add_class("a/Old.class")

        config = AuthorcovConfig(baseline_date="last tuesday")
        with caplog.at_level(logging.WARNING, logger="authorcov"):
            aggregator = ProjectAggregator(config, quiet_reporter)
        grouping = aggregator.aggregate(java_tree.project())

        assert aggregator.baseline is None
        assert "last tuesday" in caplog.text
        assert _names(grouping) == {"2001年01月": {"Alice": ["Old.class"]}}

    def test_nested_and_anonymous_classes(self, java_tree, config, quiet_reporter):
        """Foo$1 and Foo$Bar belong to Foo; FooBarBaz does not"""
        java_tree.add_source("p/Foo.java", "2024/3/15", "Alice")
        for name in ("Foo", "Foo$1", "Foo$Bar", "FooBarBaz"):
            java_tree.add_class(f"p/{name}.class")

        grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())

        assert _names(grouping) == {
            "2024年03月": {"Alice": ["Foo$1.class", "Foo$Bar.class", "Foo.class"]}
        }

    def test_full_project(self, maven_project, config, quiet_reporter):
        aggregator = ProjectAggregator(config, quiet_reporter)
        grouping = aggregator.aggregate(maven_project.project())

        assert _names(grouping) == {
            "2024年03月": {"Alice": ["Foo$1.class", "Foo$Inner.class", "Foo.class"]},
            "2024年04月": {"Bob": ["Bar.class"]},
        }
        assert aggregator.stats.to_dict() == {
            "sources_scanned": 3,
            "sources_grouped": 2,
            "directories_listed": 1,
            "artifacts_found": 4,
        }
        assert aggregator.errors == []

    def test_untagged_source_is_warned_and_skipped(self, maven_project, config, quiet_reporter, caplog):
        with caplog.at_level(logging.WARNING, logger="authorcov"):
            grouping = ProjectAggregator(config, quiet_reporter).aggregate(maven_project.project())

        assert "Untagged.java" in caplog.text
        names = [f.name for authors in grouping.values() for files in authors.values() for f in files]
        assert "Untagged.class" not in names

    def test_source_without_class_file(self, java_tree, config, quiet_reporter):
        """Tagged sources whose output was never compiled contribute nothing"""
        java_tree.add_source("p/Foo.java", "2024/3/15", "Alice")
        java_tree.add_source("q/Lost.java", "2024/3/15", "Alice")
        java_tree.add_class("p/Foo.class")

        grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())

        assert _names(grouping) == {"2024年03月": {"Alice": ["Foo.class"]}}

    def test_unparsable_date_is_skipped(self, java_tree, config, quiet_reporter, caplog):
        java_tree.add_source("p/Foo.java", "15.03.2024", "Alice")
        java_tree.add_class("p/Foo.class")

        with caplog.at_level(logging.WARNING, logger="authorcov"):
            grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())

        assert grouping == {}
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        message = warnings[0].getMessage()
        assert "@date" in message
        assert "15.03.2024" in message
        assert "Foo.java" in message

    def test_empty_author_after_truncation(self, java_tree, config, quiet_reporter, caplog):
        java_tree.add_source("p/Foo.java", "2024/3/15", "/team1")
        java_tree.add_class("p/Foo.class")

        with caplog.at_level(logging.WARNING, logger="authorcov"):
            grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())

        assert grouping == {}
        assert "empty @author" in caplog.text

    def test_missing_source_is_recorded(self, maven_project, config, quiet_reporter):
        """A source that vanishes between discovery and reading is an error, not a failure"""
        aggregator = ProjectAggregator(config, quiet_reporter)
        project = maven_project.project()
        discovered = aggregator.file_filter.get_files(project.source_directory)
        ghost = project.source_directory / "com" / "example" / "Ghost.java"

        with patch.object(aggregator.file_filter, "get_files", return_value=discovered + [ghost]):
            grouping = aggregator.aggregate(project)

        assert len(aggregator.errors) == 1
        assert "Ghost.java" in aggregator.errors[0]
        assert set(grouping) == {"2024年03月", "2024年04月"}

    def test_includes_and_excludes(self, java_tree, quiet_reporter):
        java_tree.add_source("p/Foo.java", "2024/3/15", "Alice")
        java_tree.add_source("gen/Gen.java", "2024/3/15", "Robot")
        java_tree.add_class("p/Foo.class")
        java_tree.add_class("gen/Gen.class")

        config = AuthorcovConfig(excludes=("gen/**",))
        grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())

        assert _names(grouping) == {"2024年03月": {"Alice": ["Foo.class"]}}

    def test_custom_tags_delimiters_and_period(self, java_tree, quiet_reporter):
        java_tree.add_source(
            "p/Foo.java",
            text="/**\n * @creator Dana Smith <dana@example.com>\n * @created 2023.12.01\n */\nclass Foo {}\n",
        )
        java_tree.add_class("p/Foo.class")

        config = AuthorcovConfig(
            date_tag_name="created",
            author_tag_name="creator",
            date_patterns=("yyyy.MM.dd",),
            author_delimiters=("<",),
            period_format="{year}-{month}",
        )
        grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())

        assert _names(grouping) == {"2023-12": {"Dana Smith": ["Foo.class"]}}

    def test_missing_source_root_is_empty(self, java_tree, config, quiet_reporter):
        grouping = ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())
        assert grouping == {}

    def test_source_root_not_a_directory(self, config, quiet_reporter, java_tree):
        java_tree.source_dir.parent.mkdir(parents=True)
        java_tree.source_dir.write_text("not a directory", encoding="utf-8")

        with pytest.raises(SourceTreeError):
            ProjectAggregator(config, quiet_reporter).aggregate(java_tree.project())


class TestParallelism:
    """Grouping results must not depend on the worker count"""

    @pytest.fixture
    def wide_tree(self, java_tree):
        authors = ["Alice", "Bob/ops", "Carol", "Dan/qa"]
        for pkg in range(6):
            for i in range(8):
                name = f"C{i}"
                month = (pkg + i) % 12 + 1
                java_tree.add_source(
                    f"p{pkg}/{name}.java", f"2024/{month}/1", authors[(pkg * i) % 4]
                )
                java_tree.add_class(f"p{pkg}/{name}.class")
                if i % 3 == 0:
                    java_tree.add_class(f"p{pkg}/{name}$1.class")
        return java_tree

    def test_sequential_equals_parallel(self, wide_tree, quiet_reporter):
        project = wide_tree.project()
        sequential = ProjectAggregator(AuthorcovConfig(jobs=1), quiet_reporter).aggregate(project)
        parallel = ProjectAggregator(AuthorcovConfig(jobs=8), quiet_reporter).aggregate(project)

        assert sequential == parallel
        assert list(sequential) == sorted(sequential)
        total = sum(len(files) for authors in parallel.values() for files in authors.values())
        assert total == 6 * 8 + 6 * 3

    def test_each_directory_listed_once(self, wide_tree, quiet_reporter):
        aggregator = ProjectAggregator(AuthorcovConfig(jobs=8), quiet_reporter)
        aggregator.aggregate(wide_tree.project())
        assert aggregator.stats.directories_listed == 6


# ============================================================================
# ORCHESTRATION TESTS
# ============================================================================


class TestProjectOrchestrator:
    """Test single-project and aggregation-root report creation"""

    def test_single_project_calls_sink(self, maven_project, config, quiet_reporter):
        project, reactor = Reactor.load(maven_project.basedir)
        sink = MagicMock()
        orchestrator = ProjectOrchestrator(project, reactor, config, quiet_reporter)

        results = orchestrator.create_report(ReportGroup(), sink)

        assert list(results) == ["demo"]
        assert sink.process_project.call_count == 2
        calls = [
            (c.args[0].path, c.args[1], c.args[2].artifact_id, [f.name for f in c.args[3]], c.args[4])
            for c in sink.process_project.call_args_list
        ]
        assert calls == [
            (("demo", "2024年03月"), "Alice", "demo",
             ["Foo$1.class", "Foo$Inner.class", "Foo.class"], "UTF-8"),
            (("demo", "2024年04月"), "Bob", "demo", ["Bar.class"], "UTF-8"),
        ]

    def test_title_names_root_group(self, maven_project, quiet_reporter):
        project, reactor = Reactor.load(maven_project.basedir)
        sink = ManifestReportSink(maven_project.basedir / "out")
        config = AuthorcovConfig(title="Nightly")

        ProjectOrchestrator(project, reactor, config, quiet_reporter).create_report(ReportGroup(), sink)

        assert {r.path[0] for r in sink.records} == {"Nightly"}

    def test_multi_module_aggregation(self, multi_module, config, quiet_reporter):
        root_dir, _ = multi_module
        project, reactor = Reactor.load(root_dir)
        sink = ManifestReportSink(root_dir / "out")
        orchestrator = ProjectOrchestrator(project, reactor, config, quiet_reporter)

        assert orchestrator.is_aggregation_root()
        results = orchestrator.create_report(ReportGroup(), sink)

        # testkit is test-scoped, junit is not part of the reactor
        assert list(results) == ["core", "web"]
        assert [(r.path, r.author, r.project, [f.name for f in r.files]) for r in sink.records] == [
            (("parent", "core", "2024年01月"), "Alice", "core", ["Engine.class"]),
            (("parent", "web", "2024年02月"), "Bob", "web",
             ["Controller$Handler.class", "Controller.class"]),
        ]
        assert set(orchestrator.project_stats) == {"core", "web"}

    def test_aggregate_projects_flag(self, maven_project, quiet_reporter):
        project, reactor = Reactor.load(maven_project.basedir)

        plain = ProjectOrchestrator(project, reactor, AuthorcovConfig(), quiet_reporter)
        forced = ProjectOrchestrator(
            project, reactor, AuthorcovConfig(aggregate_projects=True), quiet_reporter
        )

        assert not plain.is_aggregation_root()
        assert [p.artifact_id for p in plain.projects_to_scan()] == ["demo"]
        assert forced.is_aggregation_root()
        # demo declares no reactor dependencies
        assert forced.projects_to_scan() == []
        sink = MagicMock()
        assert forced.create_report(ReportGroup(), sink) == {}
        sink.process_project.assert_not_called()

    def test_errors_are_collected(self, maven_project, config, quiet_reporter):
        project, reactor = Reactor.load(maven_project.basedir)
        orchestrator = ProjectOrchestrator(project, reactor, config, quiet_reporter)
        ghost = project.source_directory / "Ghost.java"
        real_get_files = FileFilter.get_files

        def with_ghost(self, root):
            return real_get_files(self, root) + [ghost]

        with patch.object(FileFilter, "get_files", with_ghost):
            orchestrator.create_report(ReportGroup(), MagicMock())
        assert len(orchestrator.errors) == 1
        assert "Ghost.java" in orchestrator.errors[0]

    def test_total_duration_logged(self, maven_project, config, quiet_reporter, caplog):
        project, reactor = Reactor.load(maven_project.basedir)
        orchestrator = ProjectOrchestrator(project, reactor, config, quiet_reporter)

        with caplog.at_level(logging.INFO, logger="authorcov"):
            orchestrator.create_report(ReportGroup(), MagicMock())

        assert "Generate date author aggregate coverage report in" in caplog.text
        assert "Java source file authors: ['Alice', 'Bob']" in caplog.text
