# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Tests for building test workflows and chaining VM steps."""

import pytest

from imagetest import daisy
from imagetest.compute import Image, Project
from imagetest.testworkflow import (
    CREATE_DISKS_STEP_NAME,
    CREATE_NETWORK_STEP_NAME,
    CREATE_SUBNETWORK_STEP_NAME,
    CREATE_VMS_STEP_NAME,
    TestMetrics,
    TestWorkflow,
    TestWorkflowOpts,
    clean_test_workflow,
    new_test_workflow,
    randomly_select_zone,
)
from imagetest.utils import (
    FIRST_BOOT_GA_KEY,
    GUEST_ATTRIBUTE_TEST_KEY,
    SHOULD_REBOOT_DURING_TEST,
)


@pytest.fixture
def twf():
    yield TestWorkflow("name", "projects/p/global/images/image", "30m")


def test_workflow_name_uses_dashes():
    twf = TestWorkflow("my_suite", "image")
    assert twf.wf.name == "my-suite"
    assert twf.wf.default_timeout == "45m"
    assert twf.package_name == "my_suite.pyz"


def test_create_test_vm_requires_name(twf):
    with pytest.raises(ValueError):
        twf.create_test_vm("")


def test_get_last_step_for_unknown_vm(twf):
    with pytest.raises(ValueError):
        twf.get_last_step_for_vm("missing")


def test_create_test_vm_waits_after_create(twf):
    twf.create_test_vm("vm")

    assert twf.wf.steps[CREATE_DISKS_STEP_NAME].create_disks[0].source_image == twf.image_url
    assert twf.wf.dependencies[CREATE_VMS_STEP_NAME] == [CREATE_DISKS_STEP_NAME]
    assert twf.wf.dependencies["wait-vm"] == [CREATE_VMS_STEP_NAME]
    assert twf.get_last_step_for_vm("vm").name == "wait-vm"
    signal = twf.wf.steps["wait-vm"].wait_for_instances_signal[0]
    assert signal.guest_attribute.key_name == GUEST_ATTRIBUTE_TEST_KEY
    assert signal.serial_output.success_match == "FINISHED-TEST"


def test_reboot(twf):
    vm = twf.create_test_vm("vm")
    vm.reboot()

    assert twf.counter == 1
    assert "stop-vm-1" in twf.wf.steps
    assert twf.wf.dependencies["stop-vm-1"] == ["wait-vm"]
    assert twf.wf.dependencies["wait-stopped-vm-1"] == ["stop-vm-1"]
    assert twf.wf.dependencies["start-vm-1"] == ["wait-stopped-vm-1"]
    assert twf.get_last_step_for_vm("vm").name == "wait-started-vm-1"


def test_resize_disk_and_reboot_chains_per_vm(twf):
    vm = twf.create_test_vm("vm")
    vm.resize_disk_and_reboot(200)
    assert twf.get_last_step_for_vm("vm").name == "wait-started-vm-2"
    assert twf.wf.steps["resize-disk-vm-1"].resize_disks == [
        daisy.ResizeDisk(name="vm", size_gb=200)
    ]
    assert twf.wf.dependencies["stop-vm-2"] == ["resize-disk-vm-1"]

    vmbeta = twf.create_test_vm_beta("vmbeta")
    vmbeta.resize_disk_and_reboot(200)
    assert twf.get_last_step_for_vm("vmbeta").name == "wait-started-vmbeta-4"
    assert twf.get_last_step_for_vm("vm").name == "wait-started-vm-2"


def test_create_derivative_vm(twf):
    vm = twf.create_test_vm("vm")
    vm.add_metadata("key", "value")
    derivative = vm.create_derivative_vm("vm")

    assert derivative.name == "derivative-vm"
    assert twf.counter == 1
    assert twf.wf.dependencies["create-vms-1"] == ["detach-disk-vm-1"]
    assert twf.wf.dependencies["wait-derivative-vm"] == ["create-vms-1"]
    assert derivative.instance.metadata["key"] == "value"
    assert derivative.instance.disks[0].source == "vm"
    assert derivative in twf.test_vms


def test_resume(twf):
    vm = twf.create_test_vm("vm")
    vm.resume()

    assert twf.wf.dependencies["wait-suspended-vm-1"] == [CREATE_VMS_STEP_NAME]
    assert twf.wf.dependencies["resume-vm-1"] == ["wait-suspended-vm-1"]
    assert twf.wf.steps["wait-suspended-vm-1"].wait_for_instances_signal[0].status == ["SUSPENDED"]
    assert sorted(twf.wf.dependencies["wait-resumed-vm-1"]) == ["resume-vm-1", "wait-vm"]
    assert twf.get_last_step_for_vm("vm").name == "wait-resumed-vm-1"


def test_multiple_disks_share_steps(twf):
    twf.create_test_vm_multiple_disks([daisy.Disk(name="vm1"), daisy.Disk(name="mount1", size_gb=10)])
    twf.create_test_vm_multiple_disks([daisy.Disk(name="vm2"), daisy.Disk(name="mount2", size_gb=10)])

    create_vms = [name for name in twf.wf.steps if name.startswith(CREATE_VMS_STEP_NAME)]
    create_disks = [name for name in twf.wf.steps if name.startswith(CREATE_DISKS_STEP_NAME)]
    assert create_vms == [CREATE_VMS_STEP_NAME]
    assert create_disks == [CREATE_DISKS_STEP_NAME]

    disks = twf.wf.steps[CREATE_DISKS_STEP_NAME].create_disks
    assert [d.name for d in disks] == ["vm1", "mount1", "vm2", "mount2"]
    # Only boot disks come from the image under test.
    assert disks[1].source_image is None
    instances = twf.wf.steps[CREATE_VMS_STEP_NAME].create_instances
    assert [[d.source for d in i.disks] for i in instances] == [["vm1", "mount1"], ["vm2", "mount2"]]


def test_reboot_during_test_waits_for_first_boot(twf):
    instance = daisy.Instance(metadata={SHOULD_REBOOT_DURING_TEST: "true"})
    vm = twf.create_test_vm_multiple_disks([daisy.Disk(name="vm")], instance)
    vm.reboot()

    first = twf.wf.steps["wait-vm"].wait_for_instances_signal[0]
    after_reboot = twf.wf.steps["wait-started-vm-1"].wait_for_instances_signal[0]
    assert first.guest_attribute.key_name == FIRST_BOOT_GA_KEY
    assert after_reboot.guest_attribute.key_name == GUEST_ATTRIBUTE_TEST_KEY


def test_quota_steps_merge_by_metric_and_region(twf):
    twf.create_test_vm("vm")
    twf.wait_for_vm_quota(daisy.QuotaAvailable("CPUS", 2, "us-central1"))
    twf.wait_for_vm_quota(daisy.QuotaAvailable("CPUS", 2, "us-central1"))
    twf.wait_for_vm_quota(daisy.QuotaAvailable("CPUS", 1, "us-east1"))

    quotas = twf.wf.steps["wait-for-vm-quota"].wait_for_available_quotas
    assert quotas == [
        daisy.QuotaAvailable("CPUS", 4, "us-central1"),
        daisy.QuotaAvailable("CPUS", 1, "us-east1"),
    ]
    assert "wait-for-vm-quota" in twf.wf.dependencies[CREATE_VMS_STEP_NAME]

    twf.wait_for_disks_quota(daisy.QuotaAvailable("SSD_TOTAL_GB", 100, "us-central1"))
    assert twf.wf.dependencies[CREATE_DISKS_STEP_NAME] == ["wait-for-disk-quota"]


def test_network_steps_run_before_vms(twf):
    network = twf.create_network("net", False)
    subnetwork = network.create_subnetwork("subnet", "10.0.0.0/24")
    network.create_firewall_rule("allow-ssh", "tcp", ["22"], ["0.0.0.0/0"])
    vm = twf.create_test_vm("vm")
    vm.add_custom_network(network, subnetwork)

    assert CREATE_NETWORK_STEP_NAME in twf.wf.dependencies[CREATE_VMS_STEP_NAME]
    assert CREATE_SUBNETWORK_STEP_NAME in twf.wf.dependencies[CREATE_VMS_STEP_NAME]
    assert twf.wf.dependencies[CREATE_SUBNETWORK_STEP_NAME] == [CREATE_NETWORK_STEP_NAME]
    assert twf.wf.dependencies["create-firewall-rules"] == [CREATE_NETWORK_STEP_NAME]
    assert not twf.wf.dependencies.get(CREATE_NETWORK_STEP_NAME)
    assert vm.instance.network_interfaces[0].subnetwork == "subnet"


def test_finalize_adds_test_metadata(tmp_path):
    twf = TestWorkflow(
        "name",
        "projects/p/global/images/debian-12",
        "30m",
        image=Image(name="debian-12"),
        exclude_filter="test_slow",
    )
    vm = twf.create_test_vm("vm")
    vm.set_shutdown_script_url("#!/bin/bash\necho bye")

    twf.finalize("gs://bucket/", tmp_path)

    assert twf.gcs_path == f"gs://bucket/name-debian-12-{twf.wf.id}"
    assert twf.wf.sources["wrapper.pyz"] == (tmp_path / "wrapper.pyz").as_posix()
    assert twf.wf.sources["name.pyz"] == (tmp_path / "name.pyz").as_posix()
    source = tmp_path / f"name-{twf.wf.id}" / "shutdown-script-vm"
    assert source.read_text(encoding="utf-8") == "#!/bin/bash\necho bye"
    assert twf.wf.sources["shutdown-script-vm"] == source.as_posix()

    metadata = vm.instance.metadata
    assert metadata["shutdown-script-url"] == "${SOURCESPATH}/shutdown-script-vm"
    assert metadata["startup-script-url"] == "${SOURCESPATH}/wrapper.pyz"
    assert metadata["_test_package_url"] == "${SOURCESPATH}/name.pyz"
    assert metadata["_test_suite_name"] == "name"
    assert metadata["_cit_timeout"] == "30m"
    assert metadata["_exclude_discrete_tests"] == "test_slow"
    assert twf.results_urls() == {
        "vm": (f"{twf.gcs_path}/outs/vm.txt", f"{twf.gcs_path}/outs/vm.json")
    }


def test_new_test_workflow_picks_shape_by_architecture(fake_client_factory):
    arm = "projects/p/global/images/debian-12-arm64"
    client = fake_client_factory(images={arm: Image(name="debian-12-arm64", architecture="ARM64")})

    opts = TestWorkflowOpts(client=client, name="suite", image=arm, project="p", zone="us-central1-a")
    twf = new_test_workflow(opts)
    assert twf.machine_type.name == "t2a-standard-1"
    assert twf.zone.region == "us-central1"
    assert twf.wf.project == "p"
    assert twf.reservation_affinity is None

    opts.image = "projects/p/global/images/debian-12"
    assert new_test_workflow(opts).machine_type.name == "n1-standard-1"


def test_new_test_workflow_reservations(fake_client):
    opts = TestWorkflowOpts(
        client=fake_client,
        name="suite",
        image="projects/p/global/images/debian-12",
        project="p",
        zone="us-central1-a",
        use_reservations=True,
    )
    assert new_test_workflow(opts).reservation_affinity == {
        "consumeReservationType": "ANY_RESERVATION"
    }

    opts.reservation_urls = ["projects/p/reservations/r"]
    twf = new_test_workflow(opts)
    assert twf.reservation_affinity["consumeReservationType"] == "SPECIFIC_RESERVATION"
    assert twf.reservation_affinity["values"] == ["projects/p/reservations/r"]

    vm = twf.create_test_vm("vm")
    assert vm.instance.reservation_affinity == twf.reservation_affinity


def test_metrics():
    metrics = TestMetrics(3)
    metrics.started()
    metrics.started()
    metrics.done()
    assert str(metrics) == "1/3 workflows finished, 1 running, 1 waiting"


def test_randomly_select_zone():
    assert randomly_select_zone("us-central1-a") == "us-central1-a"
    assert randomly_select_zone("us-central1-a, us-east1-b") in ("us-central1-a", "us-east1-b")
    with pytest.raises(ValueError):
        randomly_select_zone(" , ")


def test_clean_test_workflow(fake_client_factory):
    twf = TestWorkflow("name", "image", project=Project(name="p"))
    workflow_id = twf.wf.id
    client = fake_client_factory(
        resources={
            "instances": [
                {"name": f"vm-{workflow_id}", "zone": "projects/p/zones/us-central1-a"},
                {"name": "unrelated", "zone": "projects/p/zones/us-central1-a"},
            ],
            "disks": [
                {"name": f"vm-{workflow_id}", "zone": "projects/p/zones/us-central1-a"},
            ],
        }
    )
    twf.client = client

    cleaned, errors = clean_test_workflow(twf)
    assert not errors
    assert sorted(cleaned) == [
        f"projects/p/zones/us-central1-a/disks/vm-{workflow_id}",
        f"projects/p/zones/us-central1-a/instances/vm-{workflow_id}",
    ]
    assert client.deleted_names("instances") == [f"vm-{workflow_id}"]
    assert [i["name"] for i in client.resources["instances"]] == ["unrelated"]


def _rendered_real_names(document):
    """RealName of every resource in the create steps of a rendered workflow."""
    names = {}
    for step in document["Steps"].values():
        for kind in ("CreateDisks", "CreateNetworks", "CreateSubnetworks", "CreateFirewallRules"):
            for resource in step.get(kind, []):
                names[resource["name"]] = resource["RealName"]
        for instances in step.get("CreateInstances", {}).values():
            for instance in instances:
                names[instance["name"]] = instance["RealName"]
    return names


def test_finalize_names_resources_after_workflow_id(tmp_path):
    twf = TestWorkflow("network", "projects/p/global/images/debian-12", image=Image(name="debian-12"))
    network = twf.create_network("net", False)
    subnetwork = network.create_subnetwork("subnet", "10.0.0.0/24")
    network.create_firewall_rule("allow-tcp", "tcp", [], ["10.0.0.0/24"])
    vm = twf.create_test_vm("vm")
    vm.add_custom_network(network, subnetwork)

    twf.finalize("gs://bucket", tmp_path)

    workflow_id = twf.wf.id
    assert _rendered_real_names(twf.wf.to_dict()) == {
        "vm": f"vm-{workflow_id}",
        "net": f"net-{workflow_id}",
        "subnet": f"subnet-{workflow_id}",
        "allow-tcp": f"allow-tcp-{workflow_id}",
    }
    # References between resources keep using workflow names.
    interface = vm.instance.to_dict()["networkInterfaces"][0]
    assert interface["network"] == "net"
    assert interface["subnetwork"] == "subnet"


def test_clean_test_workflow_finds_rendered_resources(tmp_path, fake_client_factory):
    twf = TestWorkflow("name", "image", project=Project(name="p"))
    twf.create_test_vm("vm")
    twf.finalize("gs://bucket", tmp_path)
    real_names = _rendered_real_names(twf.wf.to_dict())

    zone = "projects/p/zones/us-central1-a"
    client = fake_client_factory(
        resources={
            "instances": [{"name": real_names["vm"], "zone": zone}],
            "disks": [{"name": real_names["vm"], "zone": zone}],
        }
    )
    twf.client = client

    cleaned, errors = clean_test_workflow(twf)
    assert not errors
    assert len(cleaned) == 2
    assert client.deleted_names("instances") == [real_names["vm"]]
    assert client.deleted_names("disks") == [real_names["vm"]]


def test_get_last_step_for_vm_rejects_forked_chain():
    twf = TestWorkflow("name", "image")
    twf.create_test_vm("vm")
    for step in (twf.add_stop_step("vm-1", "vm"), twf.add_start_step("vm-2", "vm")):
        twf.wf.add_dependency(step.name, "wait-vm")

    with pytest.raises(ValueError, match="non-linear"):
        twf.get_last_step_for_vm("vm")


def test_get_last_step_for_vm_ignores_other_vms():
    twf = TestWorkflow("name", "image")
    twf.create_test_vm("vm")
    twf.create_test_vm("other")
    stop_other = twf.add_stop_step("other-1", "other")
    twf.wf.add_dependency(stop_other.name, "wait-vm")

    assert twf.get_last_step_for_vm("vm").name == "wait-vm"
