from __future__ import annotations

from pathlib import Path

import pytest

import kiln.cli
from kiln.errors import KilnConfigError
from kiln.options import (
    ServeOptions,
    ServeTarget,
    SharedOptions,
    normalize_builder_key,
    parse_builder_config_overrides,
    parse_output_map,
    resolve_serve_targets,
)


def _shared(*argv: str) -> SharedOptions:
    return SharedOptions.from_args(kiln.cli.parse_args(["build", *argv]), root_package="my-app")


# --- --output ---------------------------------------------------------------


def test_output_map_none_when_not_given() -> None:
    assert parse_output_map([]) is None
    assert parse_output_map(None) is None


def test_output_without_colon_maps_to_null_root() -> None:
    assert dict(parse_output_map(["build"])) == {"build": None}


def test_output_with_one_colon_splits_root_and_output() -> None:
    assert dict(parse_output_map(["web:deploy"])) == {"deploy": "web"}


def test_output_with_many_colons_rejoins_output() -> None:
    assert dict(parse_output_map(["web:C:dir:x"])) == {"C:dir:x": "web"}


def test_output_mixed_values() -> None:
    result = parse_output_map(["out", "web:deploy", "test:a:b"])
    assert dict(result) == {"out": None, "deploy": "web", "a:b": "test"}


def test_output_nested_root_rejected() -> None:
    with pytest.raises(KilnConfigError, match="Input root can not be nested: web/sub:deploy"):
        parse_output_map(["web/sub:deploy"])


def test_output_slash_in_output_part_is_fine() -> None:
    assert dict(parse_output_map(["web:deploy/site"])) == {"deploy/site": "web"}


def test_output_duplicate_directory_rejected() -> None:
    with pytest.raises(KilnConfigError, match="more than once"):
        parse_output_map(["build", "web:build"])


def test_output_map_is_read_only() -> None:
    result = parse_output_map(["build"])
    with pytest.raises(TypeError):
        result["other"] = None  # type: ignore[index]


# --- --define ---------------------------------------------------------------


def test_define_json_value_parsed() -> None:
    overrides = parse_builder_config_overrides(["my_app|minify=level=3"], "my-app")
    assert overrides == {"my-app|minify": {"level": 3}}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("true", True),
        ("null", None),
        ('"quoted"', "quoted"),
        ("[1, 2]", [1, 2]),
        ('{"a": {"b": 1}}', {"a": {"b": 1}}),
        ("1.5", 1.5),
        ("plain text", "plain text"),
        ("{not json", "{not json"),
        ("", ""),
    ],
)
def test_define_value_json_or_literal_string(raw: str, expected: object) -> None:
    overrides = parse_builder_config_overrides([f"b=opt={raw}"], "root")
    assert overrides["root|b"]["opt"] == expected


def test_define_value_keeps_extra_equals() -> None:
    overrides = parse_builder_config_overrides(["b=query=a=1&b=2"], "root")
    assert overrides["root|b"]["query"] == "a=1&b=2"


@pytest.mark.parametrize("define", ["b", "b=opt", "", "only-one=sign"])
def test_define_too_few_parts_rejected(define: str) -> None:
    with pytest.raises(KilnConfigError, match="<builder_key>=<option>=<value>"):
        parse_builder_config_overrides([define], "root")


def test_define_duplicate_rejected_regardless_of_value() -> None:
    with pytest.raises(KilnConfigError, match=r"root\|b=opt"):
        parse_builder_config_overrides(["b=opt=1", "b=opt=2"], "root")


def test_define_duplicate_detected_after_normalization() -> None:
    with pytest.raises(KilnConfigError, match="duplicate overrides"):
        parse_builder_config_overrides(["B=opt=1", "root|b=opt=1"], "root")


def test_define_different_options_same_builder_merge() -> None:
    overrides = parse_builder_config_overrides(["b=one=1", "b=two=2"], "root")
    assert overrides == {"root|b": {"one": 1, "two": 2}}


@pytest.mark.parametrize(
    ("key", "expected"),
    [
        ("minify", "my-app|minify"),
        ("Minify", "my-app|minify"),
        ("other_pkg|gen", "other-pkg|gen"),
        ("Other.Pkg:Gen", "other-pkg|gen"),
    ],
)
def test_normalize_builder_key(key: str, expected: str) -> None:
    assert normalize_builder_key(key, "My_App") == expected


# --- SharedOptions ----------------------------------------------------------


def test_shared_options_defaults() -> None:
    options = _shared()
    assert options.assume_tty is False
    assert options.delete_conflicting_outputs is False
    assert options.fail_on_severe is False
    assert options.low_resources_mode is False
    assert options.config_key is None
    assert options.output_map is None
    assert options.track_performance is False
    assert options.skip_build_script_check is False
    assert options.verbose is False
    assert options.release is False
    assert options.builder_config_overrides == {}


def test_shared_options_from_flags() -> None:
    options = _shared(
        "--assume-tty",
        "--delete-conflicting-outputs",
        "--fail-on-severe",
        "--low-resources-mode",
        "-c",
        "ci",
        "--track-performance",
        "--skip-build-script-check",
        "-o",
        "web:deploy",
        "-v",
        "-r",
        "--define",
        "gen=mode=fast",
    )
    assert options.assume_tty is True
    assert options.delete_conflicting_outputs is True
    assert options.fail_on_severe is True
    assert options.low_resources_mode is True
    assert options.config_key == "ci"
    assert options.output_map == {"deploy": "web"}
    assert options.track_performance is True
    assert options.skip_build_script_check is True
    assert options.verbose is True
    assert options.release is True
    assert options.builder_config_overrides == {"my-app|gen": {"mode": "fast"}}


def test_shared_options_are_frozen() -> None:
    options = _shared()
    with pytest.raises(AttributeError):
        options.verbose = True  # type: ignore[misc]


def test_shared_options_bad_define_fails_at_construction() -> None:
    with pytest.raises(KilnConfigError):
        _shared("--define", "nope")


def test_with_output_adds_unrooted_target_without_mutating() -> None:
    options = _shared("-o", "web:deploy")
    augmented = options.with_output("/tmp/kiln_test123")
    assert augmented.output_map == {"deploy": "web", "/tmp/kiln_test123": None}
    assert options.output_map == {"deploy": "web"}
    assert augmented.verbose == options.verbose


def test_with_output_on_empty_map() -> None:
    assert _shared().with_output("t").output_map == {"t": None}


# --- serve targets ----------------------------------------------------------


def test_serve_targets_explicit_and_defaulted_ports(tmp_path: Path) -> None:
    targets = resolve_serve_targets(["dir1", "dir2:9000"], project_root=tmp_path)
    assert targets == (ServeTarget("dir1", 8080), ServeTarget("dir2", 9000))


def test_serve_targets_explicit_ports_do_not_advance_counter(tmp_path: Path) -> None:
    targets = resolve_serve_targets(["a:9000", "b", "c"], project_root=tmp_path)
    assert targets == (ServeTarget("a", 9000), ServeTarget("b", 8080), ServeTarget("c", 8081))


def test_serve_targets_default_dirs_that_exist(tmp_path: Path) -> None:
    (tmp_path / "web").mkdir()
    (tmp_path / "example").mkdir()
    (tmp_path / "benchmark").write_text("not a dir", encoding="utf-8")
    targets = resolve_serve_targets([], project_root=tmp_path)
    assert targets == (ServeTarget("web", 8080), ServeTarget("example", 8081))


def test_serve_targets_default_dirs_all_present(tmp_path: Path) -> None:
    for d in ("benchmark", "example", "test", "web"):
        (tmp_path / d).mkdir()
    targets = resolve_serve_targets([], project_root=tmp_path)
    assert [(t.directory, t.port) for t in targets] == [
        ("web", 8080),
        ("test", 8081),
        ("example", 8082),
        ("benchmark", 8083),
    ]


def test_serve_targets_empty_when_nothing_exists(tmp_path: Path) -> None:
    assert resolve_serve_targets([], project_root=tmp_path) == ()


def test_serve_targets_explicit_args_skip_defaults(tmp_path: Path) -> None:
    (tmp_path / "web").mkdir()
    assert resolve_serve_targets(["site"], project_root=tmp_path) == (ServeTarget("site", 8080),)


def test_serve_targets_duplicate_ports_rejected(tmp_path: Path) -> None:
    with pytest.raises(KilnConfigError, match="both use port 8080"):
        resolve_serve_targets(["a", "b:8080"], project_root=tmp_path)


def test_serve_targets_port_zero_never_collides(tmp_path: Path) -> None:
    targets = resolve_serve_targets(["a:0", "b:0"], project_root=tmp_path)
    assert [t.port for t in targets] == [0, 0]


@pytest.mark.parametrize("arg", ["web:http", "web:70000", "web:-1", "a:1:2", ":8080"])
def test_serve_targets_malformed(tmp_path: Path, arg: str) -> None:
    with pytest.raises(KilnConfigError):
        resolve_serve_targets([arg], project_root=tmp_path)


def test_serve_options_from_args(tmp_path: Path) -> None:
    ns = kiln.cli.parse_args(
        ["serve", "--hostname", "any", "--log-requests", "-v", "web", "test:9001"]
    )
    options = ServeOptions.from_args(ns, root_package="app", project_root=tmp_path)
    assert options.hostname == "any"
    assert options.log_requests is True
    assert options.verbose is True
    assert options.serve_targets == (ServeTarget("web", 8080), ServeTarget("test", 9001))
    assert isinstance(options, SharedOptions)


def test_serve_options_defaults(tmp_path: Path) -> None:
    options = ServeOptions.from_args(
        kiln.cli.parse_args(["serve"]), root_package="app", project_root=tmp_path
    )
    assert options.hostname == "localhost"
    assert options.log_requests is False
    assert options.serve_targets == ()


def test_serve_options_with_output_keeps_serve_fields(tmp_path: Path) -> None:
    options = ServeOptions.from_args(
        kiln.cli.parse_args(["serve", "web"]), root_package="app", project_root=tmp_path
    )
    augmented = options.with_output("out")
    assert isinstance(augmented, ServeOptions)
    assert augmented.serve_targets == options.serve_targets
