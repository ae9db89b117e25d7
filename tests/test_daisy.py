# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Tests for the daisy workflow document model."""

import json

import pytest

from imagetest import daisy


def test_new_step_rejects_duplicates():
    wf = daisy.Workflow(name="wf")
    wf.new_step("a")
    with pytest.raises(ValueError):
        wf.new_step("a")


def test_get_step_missing_raises_step_not_found():
    wf = daisy.Workflow(name="wf")
    with pytest.raises(daisy.StepNotFoundError):
        wf.get_step("missing")
    with pytest.raises(KeyError):
        wf.get_step("missing")


def test_add_dependency_dedupes_and_validates():
    wf = daisy.Workflow(name="wf")
    for name in ("a", "b", "c"):
        wf.new_step(name)

    wf.add_dependency("c", "a", "b")
    wf.add_dependency("c", "a")
    assert wf.dependencies["c"] == ["a", "b"]
    assert wf.dependents("a") == ["c"]
    assert not wf.dependents("c")

    with pytest.raises(daisy.StepNotFoundError):
        wf.add_dependency("c", "missing")
    with pytest.raises(daisy.StepNotFoundError):
        wf.add_dependency("missing", "a")
    with pytest.raises(ValueError):
        wf.add_dependency("a", "a")


def test_instance_names_cover_every_action():
    step = daisy.Step(
        name="s",
        start_instances=["start"],
        stop_instances=["stop"],
        resume_instances=["resume"],
        create_instances=[daisy.Instance(name="created")],
        wait_for_instances_signal=[daisy.InstanceSignal(name="waited")],
        detach_disks=[daisy.DetachDisk(instance="detached", device_name="d")],
        resize_disks=[daisy.ResizeDisk(name="resized", size_gb=10)],
    )
    assert sorted(step.instance_names()) == [
        "created",
        "detached",
        "resized",
        "resume",
        "start",
        "stop",
        "waited",
    ]


def test_beta_instances_are_emitted_separately():
    step = daisy.Step(
        name="create-vms",
        create_instances=[daisy.Instance(name="ga"), daisy.Instance(name="beta", beta=True)],
    )
    create = step.to_dict()["CreateInstances"]
    assert [i["name"] for i in create["Instances"]] == ["ga"]
    assert [i["name"] for i in create["InstancesBeta"]] == ["beta"]


def test_to_json_drops_unset_fields():
    wf = daisy.Workflow(name="wf", project="p", zone="z", default_timeout="30m")
    step = wf.new_step("create-disks")
    step.create_disks = [daisy.Disk(name="disk", source_image="projects/p/global/images/i")]
    wait = wf.new_step("wait")
    wait.wait_for_instances_signal = [daisy.InstanceSignal(name="vm", stopped=True)]
    wf.add_dependency("wait", "create-disks")

    doc = json.loads(wf.to_json())
    assert doc["Name"] == "wf"
    assert doc["DefaultTimeout"] == "30m"
    assert "GCSPath" not in doc
    assert doc["Steps"]["create-disks"] == {
        "CreateDisks": [{"name": "disk", "sourceImage": "projects/p/global/images/i"}]
    }
    assert doc["Steps"]["wait"]["WaitForInstancesSignal"] == [{"Name": "vm", "Stopped": True}]
    assert doc["Dependencies"] == {"wait": ["create-disks"]}


def test_random_id_alphabet():
    workflow_id = daisy.random_id()
    assert len(workflow_id) == 5
    assert workflow_id.isalnum() and workflow_id == workflow_id.lower()
