from __future__ import annotations

import zipfile
from pathlib import Path

from fake_maven import make_aar, make_jar, manifest_xml

from native_harness.maven.coordinates import Coordinate, ResolvedDependency
from native_harness.maven.extractor import (
    extract_all,
    extract_artifact,
    parse_manifest_permissions,
    union_permissions,
)


def _dep(tmp_path: Path, raw: str, data: bytes, *, aar: bool) -> ResolvedDependency:
    coord = Coordinate.parse(raw)
    path = tmp_path / coord.group / coord.artifact / coord.version
    path.mkdir(parents=True)
    archive = path / f"{coord.artifact}-{coord.version}.{'aar' if aar else 'jar'}"
    archive.write_bytes(data)
    return ResolvedDependency(coordinate=coord, path=archive, is_aar=aar)


def test_jar_passes_through(tmp_path: Path) -> None:
    dep = _dep(tmp_path, "com.example:plain:1.0", make_jar({"a/B.class": b"\xca\xfe"}), aar=False)
    extracted = extract_artifact(dep)
    assert extracted.classes_jar == dep.path
    assert extracted.permissions == []
    assert extracted.native_libs == []


def test_aar_contents_are_unpacked(tmp_path: Path) -> None:
    data = make_aar(
        classes={"com/example/Net.class": b"\xca\xfe\xba\xbe"},
        manifest=manifest_xml(
            "com.example.net",
            ["android.permission.INTERNET", "android.permission.ACCESS_NETWORK_STATE"],
        ),
        jni={
            "arm64-v8a/libnet.so": b"\x7fELF-arm64",
            "x86_64/libnet.so": b"\x7fELF-x86_64",
        },
    )
    dep = _dep(tmp_path, "com.example:net:2.0", data, aar=True)
    extracted = extract_artifact(dep)

    with zipfile.ZipFile(extracted.classes_jar) as zf:
        assert "com/example/Net.class" in zf.namelist()
    assert extracted.package_name == "com.example.net"
    assert extracted.permissions == [
        "android.permission.INTERNET",
        "android.permission.ACCESS_NETWORK_STATE",
    ]
    libs = {(lib.abi, lib.name): lib for lib in extracted.native_libs}
    assert set(libs) == {("arm64-v8a", "libnet.so"), ("x86_64", "libnet.so")}
    arm = libs[("arm64-v8a", "libnet.so")]
    assert arm.path.read_bytes() == b"\x7fELF-arm64"
    assert arm.path.parent == dep.path.parent / "extracted" / "jni" / "arm64-v8a" / "net"
    assert arm.source == "com.example:net:2.0"


def test_aar_without_classes_jar_gets_an_empty_one(tmp_path: Path) -> None:
    dep = _dep(tmp_path, "com.example:res:1.0", make_aar(with_classes_jar=False), aar=True)
    extracted = extract_artifact(dep)
    with zipfile.ZipFile(extracted.classes_jar) as zf:
        assert not [n for n in zf.namelist() if n.endswith(".class")]


def test_binary_manifest_contributes_no_permissions() -> None:
    assert parse_manifest_permissions(b"\x03\x00\x08\x00binary") == ([], None)


def test_union_permissions_keeps_declared_first_without_duplicates(tmp_path: Path) -> None:
    a = _dep(
        tmp_path,
        "com.example:a:1.0",
        make_aar(
            manifest=manifest_xml("a", ["android.permission.INTERNET", "android.permission.CAMERA"])
        ),
        aar=True,
    )
    b = _dep(
        tmp_path,
        "com.example:b:1.0",
        make_aar(manifest=manifest_xml("b", ["android.permission.CAMERA"])),
        aar=True,
    )
    perms = union_permissions(["android.permission.INTERNET"], extract_all([a, b]))
    assert perms == ["android.permission.INTERNET", "android.permission.CAMERA"]


def test_aar_resources_are_unpacked(tmp_path: Path) -> None:
    data = make_aar(
        manifest=manifest_xml("com.example.ui", []),
        res={
            "values/strings.xml": b"<resources><string name='hi'>hi</string></resources>",
            "layout/main.xml": b"<LinearLayout/>",
            "../escape.xml": b"outside",
        },
    )
    dep = _dep(tmp_path, "com.example:ui:1.0", data, aar=True)

    extracted = extract_artifact(dep)

    assert extracted.res_dir == dep.path.parent / "extracted" / "res"
    assert (extracted.res_dir / "layout" / "main.xml").read_bytes() == b"<LinearLayout/>"
    assert (extracted.res_dir / "values" / "strings.xml").is_file()
    assert not (dep.path.parent / "extracted" / "escape.xml").exists()


def test_aar_without_resources_has_no_res_dir(tmp_path: Path) -> None:
    dep = _dep(tmp_path, "com.example:plain:1.0", make_aar(), aar=True)
    assert extract_artifact(dep).res_dir is None
