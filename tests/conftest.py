from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any

import pytest

from policyscope.snapshot import Snapshot

SNAPSHOT: dict[str, Any] = {
    "device": {"id": "dev-001", "displayName": "LAPTOP-001"},
    "memberships": [
        {"id": "g-fin", "displayName": "Finance"},
        {"id": "g-eng", "displayName": "Engineering"},
        {"id": "g-pilot", "displayName": "Pilot Ring"},
    ],
    "groups": [
        {"id": "g-fin", "displayName": "Finance"},
        {"id": "g-eng", "displayName": "Engineering"},
        {"id": "g-pilot", "displayName": "Pilot Ring"},
        {"id": "g-sales", "displayName": "Sales"},
    ],
    "filters": [
        {
            "id": "f-win11",
            "displayName": "Windows 11",
            "platform": "windows10AndLater",
            "rule": '(device.osVersion -startsWith "10.0.22")',
        }
    ],
    "policies": [
        {
            "id": "cp-bitlocker",
            "displayName": "BitLocker Required",
            "kind": "compliancePolicy",
            "platform": "windows10AndLater",
            "assignments": [{"targetKind": "allDevices"}],
        },
        {
            "id": "cp-password",
            "displayName": "Password Policy",
            "kind": "compliancePolicy",
            "assignments": [
                {"targetKind": "includeGroup", "groupId": "g-fin"},
                {"targetKind": "excludeGroup", "groupId": "g-pilot"},
            ],
        },
        {
            "id": "cfg-wifi",
            "displayName": "Corporate WiFi",
            "kind": "configurationProfile",
            "assignments": [
                {
                    "targetKind": "includeGroup",
                    "groupId": "g-fin",
                    "filterId": "f-win11",
                    "filterMode": "include",
                },
                {"targetKind": "includeGroup", "groupId": "g-eng"},
            ],
        },
        {
            "id": "app-teams",
            "displayName": "Microsoft Teams",
            "kind": "app",
            "assignments": [
                {"targetKind": "#microsoft.graph.allLicensedUsersAssignmentTarget"}
            ],
        },
        {
            "id": "rem-disk",
            "displayName": "Disk Cleanup",
            "kind": "remediationScript",
            "assignments": [{"targetKind": "includeGroup", "groupId": "g-sales"}],
        },
        {
            "id": "cp-legacy",
            "displayName": "Legacy Policy",
            "kind": "compliancePolicy",
            "assignments": [{"targetKind": "includeGroup", "groupId": "g-deleted"}],
        },
    ],
    "compliance": {
        "policyStates": {
            "compliancePolicy": [
                {"id": "cp-bitlocker", "displayName": "BitLocker Required", "state": "compliant"},
                {"id": "cp-password", "displayName": "Password Policy", "state": "nonCompliant"},
            ],
            "configurationProfile": [
                {"id": "cfg-wifi", "displayName": "Corporate WiFi", "state": "compliant"}
            ],
            "app": [{"id": "app-teams", "displayName": "Microsoft Teams", "state": "installed"}],
        },
        "deviceStatuses": {
            "cp-bitlocker": [
                {"deviceId": "dev-900", "status": "nonCompliant"},
                {
                    "deviceId": "dev-001",
                    "status": "compliant",
                    "lastReportedDateTime": "2026-02-01T15:30:00Z",
                },
            ],
            "cfg-wifi": [{"deviceId": "dev-001", "status": "error"}],
            "app-teams": [],
        },
        "settingStates": {
            "cp-bitlocker": [
                {"setting": "BitLockerEnabled", "state": "compliant"},
                {"setting": "SecureBootEnabled", "state": "compliant"},
            ],
            "cfg-wifi": [
                {"setting": "Ssid", "state": "compliant"},
                {"setting": "RootCertificate", "state": "error"},
            ],
        },
        "report": {
            "compliancePolicy": [
                {"PolicyId": "cp-bitlocker", "PolicyStatus": "Compliant", "DeviceId": "dev-001"}
            ]
        },
    },
}


@pytest.fixture
def snapshot_data() -> dict[str, Any]:
    return copy.deepcopy(SNAPSHOT)


@pytest.fixture
def snapshot(snapshot_data: dict[str, Any]) -> Snapshot:
    return Snapshot.model_validate(snapshot_data)


@pytest.fixture
def snapshot_path(tmp_path: Path, snapshot_data: dict[str, Any]) -> Path:
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(snapshot_data), encoding="utf-8")
    return path
