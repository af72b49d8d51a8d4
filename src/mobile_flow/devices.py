"""Device and emulator discovery plus best-target selection."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .commands import CommandRunner
from .models import Device, parse_platform_version

logger = logging.getLogger(__name__)

ANDROID_LIST_COMMAND = ("sf", ("force", "lightning", "local", "device", "list", "-p", "android", "--json", "-o", "all"))
IOS_LIST_COMMAND = ("xcrun", ("simctl", "list", "devices", "available", "--json"))
DEFAULT_LIST_TIMEOUT_SECONDS = 30.0

_IOS_RUNTIME_RE = re.compile(r"iOS-(\d+)-(\d+)")

CompatibilityPredicate = Callable[[Device], bool]


def _by_version_desc(devices: Sequence[Device]) -> list[Device]:
    # sorted() is stable, so equal versions keep their input order.
    return sorted(devices, key=lambda device: device.version_key, reverse=True)


def select_device(
    candidates: Sequence[Device],
    is_compatible: CompatibilityPredicate | None = None,
) -> Device | None:
    """Pick the best deployment target from ``candidates``.

    Rules, first match wins, ties broken by highest platform version and
    then by input order:

    1. a running device that is compatible;
    2. any running device;
    3. the compatible device with the highest version;
    4. any device, highest version first.

    Args:
        candidates: Devices reported by the host tooling.
        is_compatible: Predicate deciding compatibility; defaults to the
            device's own ``is_compatible`` flag.

    Returns:
        The chosen device, or ``None`` only when ``candidates`` is empty.
    """
    if not candidates:
        return None
    compatible = is_compatible or (lambda device: device.is_compatible)

    running = [device for device in candidates if device.is_running]
    running_compatible = [device for device in running if compatible(device)]
    if running_compatible:
        chosen = _by_version_desc(running_compatible)[0]
        logger.debug("Selected running compatible device %s", chosen.identifier)
        return chosen
    if running:
        chosen = _by_version_desc(running)[0]
        logger.warning("Selected running device %s whose compatibility is unknown or failing", chosen.identifier)
        return chosen

    compatible_devices = [device for device in candidates if compatible(device)]
    if compatible_devices:
        chosen = _by_version_desc(compatible_devices)[0]
        logger.debug("Selected compatible device %s (version %s)", chosen.identifier, chosen.platform_version)
        return chosen

    chosen = _by_version_desc(candidates)[0]
    logger.warning("No compatible device found; falling back to %s", chosen.identifier)
    return chosen


def minimum_version_predicate(minimum: str | int | None) -> CompatibilityPredicate:
    """Compatibility predicate: unknown versions pass, known ones must reach ``minimum``."""
    floor = parse_platform_version(minimum)

    def _check(device: Device) -> bool:
        if not floor or not device.version_key:
            return device.is_compatible
        return device.version_key >= floor

    return _check


@dataclass(frozen=True)
class DeviceDiscovery:
    success: bool
    devices: list[Device] = field(default_factory=list)
    error: str | None = None


# ---------------------------------------------------------------------------
# Android (Salesforce CLI)
# ---------------------------------------------------------------------------


class _SFOsVersion(BaseModel):
    major: int
    minor: int = 0
    patch: int = 0


class _SFAndroidDevice(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str
    device_type: str = Field(alias="deviceType")
    os_type: str = Field(alias="osType")
    os_version: str | _SFOsVersion = Field(alias="osVersion")


class _SFDeviceList(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    output_content: list[_SFAndroidDevice] = Field(alias="outputContent")


def parse_android_device_list(stdout: str, *, min_sdk: int = 0) -> list[Device]:
    """Parse ``sf force lightning local device list -p android --json`` output.

    Raises:
        ValueError: If the output is not the expected JSON document.
    """
    try:
        parsed = _SFDeviceList.model_validate_json(stdout)
    except ValidationError as exc:
        raise ValueError(f"Failed to parse device list JSON: {exc}") from exc

    devices = []
    for entry in parsed.output_content:
        api_level = entry.os_version.major if isinstance(entry.os_version, _SFOsVersion) else None
        devices.append(
            Device(
                identifier=entry.id,
                name=entry.name,
                platform_version=str(api_level) if api_level is not None else None,
                is_running=False,
                is_compatible=api_level is None or api_level >= min_sdk,
            )
        )
    return devices


async def fetch_android_devices(
    runner: CommandRunner,
    *,
    min_sdk: int = 0,
    timeout: float = DEFAULT_LIST_TIMEOUT_SECONDS,
) -> DeviceDiscovery:
    program, args = ANDROID_LIST_COMMAND
    result = await runner.execute(program, args, timeout=timeout)
    if not result.success:
        return DeviceDiscovery(success=False, error=result.describe_failure())
    try:
        devices = parse_android_device_list(result.stdout, min_sdk=min_sdk)
    except ValueError as exc:
        logger.error("Unreadable Android device list: %s", exc)
        return DeviceDiscovery(success=False, error=str(exc))
    logger.debug("Found %d Android emulator(s)", len(devices))
    return DeviceDiscovery(success=True, devices=devices)


# ---------------------------------------------------------------------------
# iOS (simctl)
# ---------------------------------------------------------------------------


def extract_ios_version(runtime_identifier: str) -> str | None:
    """``com.apple.CoreSimulator.SimRuntime.iOS-18-0`` -> ``"18.0"``."""
    match = _IOS_RUNTIME_RE.search(runtime_identifier)
    if match is None:
        return None
    return f"{match.group(1)}.{match.group(2)}"


class _SimctlDevice(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    udid: str
    name: str
    state: str
    is_available: bool = Field(default=True, alias="isAvailable")


class _SimctlDeviceList(BaseModel):
    devices: dict[str, list[_SimctlDevice]]


def parse_simctl_devices(stdout: str, *, min_os_version: str | None = None) -> list[Device]:
    """Parse ``xcrun simctl list devices available --json`` output.

    Only iOS runtimes are kept. Raises ``ValueError`` on malformed output.
    """
    try:
        parsed = _SimctlDeviceList.model_validate_json(stdout)
    except ValidationError as exc:
        raise ValueError(f"Failed to parse simulator list JSON: {exc}") from exc

    floor = parse_platform_version(min_os_version)
    devices = []
    for runtime, entries in parsed.devices.items():
        version = extract_ios_version(runtime)
        if version is None:
            continue
        for entry in entries:
            if not entry.is_available:
                continue
            devices.append(
                Device(
                    identifier=entry.udid,
                    name=entry.name,
                    platform_version=version,
                    is_running=entry.state == "Booted",
                    is_compatible=not floor or parse_platform_version(version) >= floor,
                )
            )
    return devices


async def fetch_ios_simulators(
    runner: CommandRunner,
    *,
    min_os_version: str | None = None,
    timeout: float = DEFAULT_LIST_TIMEOUT_SECONDS,
) -> DeviceDiscovery:
    program, args = IOS_LIST_COMMAND
    result = await runner.execute(program, args, timeout=timeout)
    if not result.success:
        return DeviceDiscovery(success=False, error=result.describe_failure())
    try:
        devices = parse_simctl_devices(result.stdout, min_os_version=min_os_version)
    except ValueError as exc:
        logger.error("Unreadable simulator list: %s", exc)
        return DeviceDiscovery(success=False, error=str(exc))
    logger.debug("Found %d iOS simulator(s)", len(devices))
    return DeviceDiscovery(success=True, devices=devices)
