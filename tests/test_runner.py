# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Tests for packaging and running workflows."""

import json
import subprocess
import zipfile

import pytest

from imagetest import runner
from imagetest.compute import Image
from imagetest.testworkflow import TestMetrics, TestWorkflow

PASS_OUTPUT = """\
=== RUN   test_disk_read_write
--- PASS: test_disk_read_write (0.50s)
PASS
"""


class FakeCommands:
    """Answer daisy and gcloud storage commands without running them."""

    def __init__(self, outputs=None, fail_daisy=False):
        self.outputs = outputs or {}
        self.fail_daisy = fail_daisy
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if cmd[0] == runner.DAISY:
            if self.fail_daisy:
                raise RuntimeError("daisy exited with 1")
            return subprocess.CompletedProcess(cmd, 0, "{}", "")
        if cmd[:3] == ["gcloud", "storage", "cat"]:
            if cmd[3] not in self.outputs:
                raise RuntimeError(f"no such object {cmd[3]}")
            return subprocess.CompletedProcess(cmd, 0, self.outputs[cmd[3]], "")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def daisy_calls(self):
        return [c for c in self.calls if c[0] == runner.DAISY]


@pytest.fixture
def cleaned(monkeypatch):
    calls = []

    def clean(twf):
        calls.append(twf)
        return [], []

    monkeypatch.setattr(runner, "clean_test_workflow", clean)
    yield calls


def _workflow(tmp_path, name="disk", vms=("vm",)):
    twf = TestWorkflow(name, "projects/p/global/images/debian-12", image=Image(name="debian-12"))
    for vm in vms:
        twf.create_test_vm(vm)
    twf.finalize("gs://bucket", tmp_path)
    return twf


def _outputs(twf, text=PASS_OUTPUT):
    outputs = {}
    for vm, (results_url, properties_url) in twf.results_urls().items():
        outputs[results_url] = text
        outputs[properties_url] = json.dumps({"name": vm})
    return outputs


def test_build_test_packages(tmp_path):
    packages = runner.build_test_packages(tmp_path, ["imageboot", "disk", "imageboot"])
    assert [p.name for p in packages] == ["wrapper.pyz", "disk.pyz", "imageboot.pyz"]

    for package in packages:
        assert package.read_bytes().startswith(b"#!/usr/bin/env python3")
        with zipfile.ZipFile(package) as archive:
            names = archive.namelist()
            main = archive.read("__main__.py").decode("utf-8")
        assert "imagetest/guest/runner.py" in names
        assert "imagetest/test_suites/disk/checks.py" in names
        assert not any("__pycache__" in n for n in names)
        expected = "wrapper" if package.name == "wrapper.pyz" else "runner"
        assert f"imagetest.guest.{expected}" in main


def test_write_workflow(tmp_path):
    twf = _workflow(tmp_path)
    path = runner.write_workflow(twf, tmp_path)
    assert path.name == f"disk-{twf.wf.id}.wf.json"
    assert json.loads(path.read_text(encoding="utf-8"))["Name"] == "disk"


def test_suite_name():
    twf = TestWorkflow("disk", "projects/p/global/images/family/debian-12")
    assert runner.suite_name(twf) == "debian-12-disk"
    twf.image = Image(name="debian-12-bookworm-v20240110")
    assert runner.suite_name(twf) == "debian-12-bookworm-v20240110-disk"


def test_collect_results(monkeypatch, tmp_path):
    twf = _workflow(tmp_path, vms=("vm1", "vm2"))
    outputs = _outputs(twf)
    # vm2 never uploaded its results.
    del outputs[twf.results_urls()["vm2"][0]]
    monkeypatch.setattr(runner, "subprocess_run", FakeCommands(outputs))

    suite = runner.collect_results(twf)
    assert suite.name == "debian-12-disk"
    assert suite.tests == 1
    assert suite.errors == 1
    assert '"name": "vm1"' in suite.system_out
    assert "failed to read results of vm2" in suite.system_err


def test_run_workflow_error_still_cleans_up(monkeypatch, tmp_path, cleaned):
    twf = _workflow(tmp_path)
    monkeypatch.setattr(runner, "subprocess_run", FakeCommands(fail_daisy=True))
    metrics = TestMetrics(1)

    suite = runner.run_workflow(twf, tmp_path, metrics)
    assert suite.errors == 1
    assert "daisy exited with 1" in suite.test_cases[0].error
    assert cleaned == [twf]
    assert metrics.finished == 1 and metrics.running == 0


def test_run_tests(monkeypatch, tmp_path, cleaned):
    first = _workflow(tmp_path, "disk")
    skipped = _workflow(tmp_path, "cvm")
    skipped.skip("no confidential features")
    second = _workflow(tmp_path, "imageboot")
    outputs = {**_outputs(first), **_outputs(second)}
    commands = FakeCommands(outputs)
    monkeypatch.setattr(runner, "subprocess_run", commands)

    suites = runner.run_tests(
        [first, skipped, second],
        tmp_path,
        test_projects=["p1", "p2"],
        parallel_count=2,
        parallel_stagger=0,
    )

    assert [s.name for s in suites.suites] == [
        "debian-12-disk",
        "debian-12-cvm",
        "debian-12-imageboot",
    ]
    assert suites.tests == 3
    assert suites.skipped == 1
    assert suites.failures == 0
    assert (first.wf.project, second.wf.project) == ("p1", "p2")
    assert len(commands.daisy_calls()) == 2
    assert sorted(t.name for t in cleaned) == ["disk", "imageboot"]


def test_run_tests_needs_projects(tmp_path):
    with pytest.raises(ValueError):
        runner.run_tests([], tmp_path, test_projects=[])


def test_validate_tests_collects_errors(monkeypatch, tmp_path):
    twf = _workflow(tmp_path)
    commands = FakeCommands(fail_daisy=True)
    monkeypatch.setattr(runner, "subprocess_run", commands)

    errors = runner.validate_tests([twf], tmp_path)
    assert len(errors) == 1
    assert "-validate" in commands.calls[0]


def test_download_artifacts(monkeypatch, tmp_path):
    twf = _workflow(tmp_path)
    commands = FakeCommands()
    monkeypatch.setattr(runner, "subprocess_run", commands)

    runner.download_artifacts([twf], tmp_path / "artifacts")
    cmd = commands.calls[0]
    assert cmd[:4] == ["gcloud", "storage", "rsync", "--recursive"]
    assert cmd[-2] == twf.gcs_path
    assert (tmp_path / "artifacts" / f"disk-{twf.wf.id}").is_dir()
