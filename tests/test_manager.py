# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Tests for the manager command line."""

import re

import pytest

from imagetest import junit, manager, runner
from imagetest.compute import Image


@pytest.mark.parametrize(
    "image,url",
    [
        ("debian-12", "projects/debian-cloud/global/images/family/debian-12"),
        (
            "debian-12-bookworm-v20240110",
            "projects/debian-cloud/global/images/debian-12-bookworm-v20240110",
        ),
        ("ubuntu-2204-lts", "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"),
        ("ubuntu-pro-2204-lts", "projects/ubuntu-os-pro-cloud/global/images/family/ubuntu-pro-2204-lts"),
        ("rhel-9", "projects/rhel-cloud/global/images/family/rhel-9"),
        ("rhel-8-4-sap-ha", "projects/rhel-sap-cloud/global/images/family/rhel-8-4-sap-ha"),
        ("sles-15-sp5-sap", "projects/suse-sap-cloud/global/images/family/sles-15-sp5-sap"),
        ("fedora-coreos-stable", "projects/fedora-coreos-cloud/global/images/family/fedora-coreos-stable"),
        ("projects/my-project/global/images/custom", "projects/my-project/global/images/custom"),
    ],
)
def test_resolve_image(image, url):
    assert manager.resolve_image(image) == url


def test_resolve_unknown_image():
    with pytest.raises(ValueError):
        manager.resolve_image("plan9-4")


def test_parse_args_defaults():
    args = manager.parse_args(["--project", "p", "--images", "debian-12, rhel-9"])
    assert args.images == ["debian-12", "rhel-9"]
    assert args.test_projects == ["p"]
    assert args.zone == "us-central1-a"
    assert args.parallel_count == 5
    assert args.parallel_stagger == 60
    assert args.set_exit_status is True
    assert args.filter is None
    assert args.x86_shape == "n1-standard-1"
    assert args.arm64_shape == "t2a-standard-1"


def test_parse_args_overrides():
    args = manager.parse_args(
        [
            "--project=p",
            "--images=debian-12",
            "--test_projects=a,b",
            "--machine_type=e2-standard-2",
            "--parallel_stagger=5s",
            "--filter=^(cvm|disk)$",
            "--no-set_exit_status",
        ]
    )
    assert args.test_projects == ["a", "b"]
    assert args.x86_shape == args.arm64_shape == "e2-standard-2"
    assert args.parallel_stagger == 5
    assert args.filter.pattern == "^(cvm|disk)$"
    assert args.set_exit_status is False


@pytest.mark.parametrize(
    "argv",
    [
        ["--images", "debian-12"],
        ["--project", "p"],
        ["--project", "p", "--images", "debian-12", "--parallel_count", "0"],
        ["--project", "p", "--images", "debian-12", "--filter", "("],
        ["--project", "p", "--images", "debian-12", "--parallel_stagger", "soon"],
    ],
)
def test_parse_args_errors(argv):
    with pytest.raises(SystemExit):
        manager.parse_args(argv)


def test_select_suites():
    names = [s.NAME for s in manager.select_suites(re.compile("^(cvm|disk)$"), None)]
    assert names == ["cvm", "disk"]

    names = [s.NAME for s in manager.select_suites(None, re.compile("metadata|cvm"))]
    assert "metadata" not in names and "cvm" not in names
    assert "imageboot" in names

    assert len(manager.select_suites(None, None)) == len(manager.TEST_SUITES)


def test_build_test_workflows(fake_client_factory):
    arm = "projects/debian-cloud/global/images/family/debian-12-arm64"
    client = fake_client_factory(
        images={arm: Image(name="debian-12-bookworm-arm64-v20240110", architecture="ARM64")}
    )
    args = manager.parse_args(
        [
            "--project=p",
            "--images=debian-12-arm64,rhel-9",
            "--filter=imageboot|suspendresume",
            "--exclude_discrete_tests=test_boot_time",
        ]
    )

    twfs = manager.build_test_workflows(client, args)
    assert [(t.image_url, t.name) for t in twfs] == [
        (arm, "imageboot"),
        (arm, "suspendresume"),
        ("projects/rhel-cloud/global/images/family/rhel-9", "imageboot"),
        ("projects/rhel-cloud/global/images/family/rhel-9", "suspendresume"),
    ]

    arm_boot, arm_suspend, rhel_boot, rhel_suspend = twfs
    assert arm_boot.machine_type.name == "t2a-standard-1"
    assert arm_boot.exclude_filter == "test_boot_time"
    assert not arm_boot.skipped
    assert arm_suspend.skipped
    assert rhel_boot.machine_type.name == "n1-standard-1"
    assert not rhel_suspend.skipped


def test_junit_path(monkeypatch, tmp_path):
    monkeypatch.delenv("ARTIFACTS", raising=False)
    assert str(manager.junit_path("out/junit.xml")) == "out/junit.xml"
    monkeypatch.setenv("ARTIFACTS", str(tmp_path))
    assert manager.junit_path("out/junit.xml") == tmp_path / "junit.xml"


@pytest.fixture
def patched_main(monkeypatch, fake_client):
    """Run main without gcloud or daisy."""
    calls = {}
    monkeypatch.delenv("ARTIFACTS", raising=False)
    monkeypatch.setattr(manager, "ComputeClient", lambda **kwargs: fake_client)
    monkeypatch.setattr(
        runner, "finalize_workflows", lambda twfs, work_dir, gcs_path: calls.update(gcs_path=gcs_path)
    )
    yield calls


def test_main_print(patched_main, monkeypatch, tmp_path):
    printed = []
    monkeypatch.setattr(runner, "print_tests", lambda twfs, work_dir: printed.extend(twfs))

    rc = manager.main(
        ["--project=p", "--images=debian-12", "--filter=^disk$", "--print", f"--local_path={tmp_path}"]
    )
    assert rc == 0
    assert [t.name for t in printed] == ["disk"]
    assert patched_main["gcs_path"] == "gs://p-daisy-bkt"


def test_main_validate_failure(patched_main, monkeypatch, tmp_path):
    monkeypatch.setattr(
        runner, "validate_tests", lambda twfs, work_dir: [RuntimeError("bad workflow")]
    )
    rc = manager.main(
        ["--project=p", "--images=debian-12", "--validate", f"--local_path={tmp_path}"]
    )
    assert rc == 1


def test_main_run_writes_junit(patched_main, monkeypatch, tmp_path):
    failing = junit.TestSuites(
        suites=[junit.TestSuite(name="debian-12-disk", tests=1, failures=1)]
    )
    seen = {}

    def run_tests(twfs, work_dir, **kwargs):
        seen.update(kwargs)
        return failing

    monkeypatch.setattr(runner, "run_tests", run_tests)
    out = tmp_path / "results" / "junit.xml"
    argv = [
        "--project=p",
        "--images=debian-12",
        "--filter=^disk$",
        "--test_projects=a,b",
        "--gcs_path=gs://bucket/path",
        f"--local_path={tmp_path}",
        f"--out_path={out}",
    ]

    assert manager.main(argv) == 1
    assert out.read_text(encoding="utf-8").startswith("<?xml")
    assert seen["test_projects"] == ["a", "b"]
    assert patched_main["gcs_path"] == "gs://bucket/path"

    assert manager.main(argv + ["--no-set_exit_status"]) == 0


def test_build_test_workflows_skips_windows(fake_client):
    args = manager.parse_args(["--project=p", "--images=windows-2022", "--filter=imageboot"])

    (twf,) = manager.build_test_workflows(fake_client, args)
    assert twf.image_url == "projects/windows-cloud/global/images/family/windows-2022"
    assert twf.skipped
    assert not twf.wf.steps
