from pathlib import Path

from llmdoc import (
    ExclusionSource,
    IgnoreMatcher,
    NameExclusions,
    PathFilter,
    load_ignore_rules,
)

from conftest import write_files


def test_ignore_matcher_basic_patterns(tmp_path: Path) -> None:
    matcher = IgnoreMatcher.from_lines(
        ["# build output", "", "*.log", "build/"], tmp_path
    )

    assert matcher.matches("app.log") is True
    assert matcher.matches("logs/app.log") is True
    assert matcher.matches("build") is True
    assert matcher.matches("build/out.js") is True
    assert matcher.matches("src/main.py") is False


def test_ignore_matcher_anchored_pattern(tmp_path: Path) -> None:
    matcher = IgnoreMatcher.from_lines(["/secret.txt"], tmp_path)

    assert matcher.matches("secret.txt") is True
    assert matcher.matches("nested/secret.txt") is False


def test_ignore_matcher_negation_last_rule_wins(tmp_path: Path) -> None:
    matcher = IgnoreMatcher.from_lines(["*.log", "!keep.log"], tmp_path)

    assert matcher.matches("debug.log") is True
    assert matcher.matches("keep.log") is False


def test_blank_rules_match_nothing(tmp_path: Path) -> None:
    matcher = IgnoreMatcher.from_lines(["", "   ", "# only a comment"], tmp_path)

    assert not matcher
    assert matcher.matches("anything.txt") is False
    assert matcher.matches("") is False


def test_missing_ignore_file_is_empty(tmp_path: Path) -> None:
    assert load_ignore_rules(tmp_path / ".gitignore") == ()
    matcher = IgnoreMatcher.from_file(tmp_path / ".gitignore", tmp_path)
    assert matcher.matches("a.txt") is False


def test_load_ignore_rules_keeps_line_order(tmp_path: Path) -> None:
    (tmp_path / ".llmignore").write_text("secrets/\n*.pem\n", encoding="utf-8")
    assert load_ignore_rules(tmp_path / ".llmignore") == ("secrets/", "*.pem")


def test_name_exclusions_are_case_insensitive_and_anchored() -> None:
    names = NameExclusions(["node_modules", "*.egg-info", ".DS_Store"])

    assert names.matches("node_modules") is True
    assert names.matches("NODE_MODULES") is True
    assert names.matches("llmdoc.egg-info") is True
    assert names.matches(".ds_store") is True
    assert names.matches("node_modules2") is False
    assert names.matches("my_node_modules") is False


def test_name_exclusions_treat_other_glob_characters_literally() -> None:
    literal = NameExclusions(["[ab]", "file?.txt"])

    assert literal.matches("a") is False
    assert literal.matches("[ab]") is True
    assert literal.matches("file1.txt") is False
    assert literal.matches("file?.txt") is True


def test_vcs_ignore_takes_precedence_over_tool_ignore(workspace: Path) -> None:
    write_files(workspace, {
        ".gitignore": "*.log\n",
        ".llmignore": "*.log\nsecrets/\n",
    })
    path_filter = PathFilter.for_workspace(workspace)

    assert path_filter.should_skip(str(workspace / "debug.log")) is ExclusionSource.VCS_IGNORE
    assert path_filter.excluded[ExclusionSource.VCS_IGNORE] == 1
    assert path_filter.excluded[ExclusionSource.TOOL_IGNORE] == 0

    assert path_filter.should_skip(str(workspace / "secrets")) is ExclusionSource.TOOL_IGNORE
    assert path_filter.should_skip(str(workspace / "src" / "main.py")) is None
    assert path_filter.excluded_counts() == {
        ExclusionSource.VCS_IGNORE: 1,
        ExclusionSource.TOOL_IGNORE: 1,
    }


def test_path_filter_has_no_opinion_outside_root(workspace: Path) -> None:
    write_files(workspace, {".gitignore": "*\n"})
    path_filter = PathFilter.for_workspace(workspace)

    assert path_filter.should_skip(str(workspace)) is None
    assert path_filter.should_skip(str(workspace.parent / "other.txt")) is None
    assert path_filter.excluded[ExclusionSource.VCS_IGNORE] == 0


def test_path_filter_without_ignore_files_includes_everything(workspace: Path) -> None:
    path_filter = PathFilter.for_workspace(workspace)

    assert path_filter.should_skip(str(workspace / "node_modules")) is None
    assert path_filter.relative(str(workspace / "a" / "b.txt")) == "a/b.txt"
