"""Tests for archive entry path confinement."""

import os

import pytest

from image_analyzer.exceptions import UnsafePathError
from image_analyzer.utils.validator import (
    OPAQUE_WHITEOUT,
    confine_entry_path,
    escapes_root,
    is_within_root,
    normalize_entry_name,
    resolve_in_root,
    resolve_link_target,
    split_whiteout,
)


def test_confine_simple_names(root):
    assert confine_entry_path(root, "etc/passwd") == os.path.join(root, "etc", "passwd")
    assert confine_entry_path(root, "./usr/bin/") == os.path.join(root, "usr", "bin")
    assert confine_entry_path(root, "a/../b") == os.path.join(root, "b")
    assert confine_entry_path(root, ".") == root


@pytest.mark.parametrize(
    "name",
    [
        "../evil",
        "../../evil",
        "a/../../evil",
        "a/b/../../../evil",
        "/etc/passwd",
        "/",
        "",
        "a\x00b",
    ],
)
def test_confine_rejects_escapes(root, name):
    with pytest.raises(UnsafePathError):
        confine_entry_path(root, name)


def test_confine_rejects_writes_through_escaping_symlink(root, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    os.symlink(str(outside), os.path.join(root, "link"))

    with pytest.raises(UnsafePathError):
        confine_entry_path(root, "link/file")


def test_confine_allows_symlink_inside_root(root):
    os.mkdir(os.path.join(root, "real"))
    os.symlink("real", os.path.join(root, "alias"))
    assert confine_entry_path(root, "alias/file") == os.path.join(root, "alias", "file")


def test_normalize_and_escape_helpers():
    assert normalize_entry_name("./") == ""
    assert normalize_entry_name("a//b/./c") == "a/b/c"
    assert escapes_root("..")
    assert escapes_root("../x")
    assert not escapes_root("..x")


def test_is_within_root(root):
    assert is_within_root(root, root)
    assert is_within_root(root, os.path.join(root, "a"))
    assert not is_within_root(root, os.path.dirname(root))
    assert not is_within_root(root, root + "-sibling")


def test_resolve_link_target_is_clamped_to_root(root):
    link = os.path.join(root, "usr", "bin", "python3")
    assert resolve_link_target(root, link, "python3.12") == os.path.join(
        root, "usr", "bin", "python3.12"
    )
    assert resolve_link_target(root, link, "/usr/local/bin/python") == os.path.join(
        root, "usr", "local", "bin", "python"
    )
    assert resolve_link_target(root, link, "../../../../../etc/shadow") == os.path.join(
        root, "etc", "shadow"
    )


def test_resolve_in_root_follows_links_inside_root(root):
    os.makedirs(os.path.join(root, "usr", "lib"))
    os.makedirs(os.path.join(root, "etc"))
    os.symlink("../usr/lib/os-release", os.path.join(root, "etc", "os-release"))

    assert resolve_in_root(root, "etc/os-release") == os.path.join(
        root, "usr", "lib", "os-release"
    )


def test_resolve_in_root_treats_absolute_links_as_image_paths(root):
    os.makedirs(os.path.join(root, "etc"))
    os.symlink("/etc/hosts", os.path.join(root, "etc", "alias"))
    assert resolve_in_root(root, "etc/alias") == os.path.join(root, "etc", "hosts")


def test_resolve_in_root_detects_loops(root):
    os.symlink("b", os.path.join(root, "a"))
    os.symlink("a", os.path.join(root, "b"))
    with pytest.raises(OSError):
        resolve_in_root(root, "a")


@pytest.mark.parametrize(
    "name,expected",
    [
        ("etc/.wh.hosts", ("etc", "hosts")),
        (".wh.file", ("", "file")),
        ("usr/lib/.wh..wh..opq", ("usr/lib", OPAQUE_WHITEOUT)),
        ("etc/hosts", None),
        ("etc/.wh.", None),
    ],
)
def test_split_whiteout(name, expected):
    assert split_whiteout(name) == expected
