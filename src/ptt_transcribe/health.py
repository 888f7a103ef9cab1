import logging
from dataclasses import dataclass

import sounddevice as sd

from ptt_transcribe.config import TranscribeConfig

logger = logging.getLogger(__name__)

CRITICAL_CHECKS = {"audio_device", "api_key"}


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    detail: str


def run_startup_checks(config: TranscribeConfig) -> list[HealthCheckResult]:
    results = [
        _check_audio_device(config),
        _check_api_key(config),
    ]

    passed = sum(1 for r in results if r.passed)
    logger.info("Health check: %d/%d passed", passed, len(results))
    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        symbol = "OK" if result.passed else "FAIL"
        logger.log(level, "  [%s] %s: %s", symbol, result.name, result.detail)

    return results


def has_critical_failures(results: list[HealthCheckResult]) -> bool:
    return any(not r.passed and r.name in CRITICAL_CHECKS for r in results)


def _check_audio_device(config: TranscribeConfig) -> HealthCheckResult:
    name = "audio_device"
    device_name = config.capture_device
    try:
        if not device_name:
            default = sd.query_devices(kind="input")
            return HealthCheckResult(name=name, passed=True, detail=f"Default input: {default['name']}")

        for i, dev in enumerate(sd.query_devices()):
            if dev["max_input_channels"] <= 0:
                continue
            if device_name == str(i) or device_name.lower() in dev["name"].lower():
                return HealthCheckResult(name=name, passed=True, detail=f"Device '{dev['name']}' found")
        return HealthCheckResult(name=name, passed=False, detail=f"No input device matching '{device_name}'")
    except (sd.PortAudioError, ValueError):
        return HealthCheckResult(name=name, passed=False, detail="No input devices available")


def _check_api_key(config: TranscribeConfig) -> HealthCheckResult:
    name = "api_key"
    if config.resolve_api_key():
        return HealthCheckResult(name=name, passed=True, detail="Deepgram key configured")
    if config.deepgram_api_key_file:
        return HealthCheckResult(
            name=name, passed=False, detail=f"Key file '{config.deepgram_api_key_file}' missing or empty"
        )
    return HealthCheckResult(name=name, passed=False, detail="Deepgram key not configured")
