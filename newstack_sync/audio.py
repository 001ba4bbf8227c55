"""
Procedural audio cues.

Success and error cues are synthesized as short tone sequences (no audio
assets): each note ramps up linearly over 20 ms, decays exponentially to 1% and
fades out over a 100 ms tail so there are no audible clicks. Rendered buffers go
to an AudioSink.

Mute state is persisted in local storage and observable: set_muted() notifies
every subscriber synchronously, in registration order, before it returns.
"""

from __future__ import annotations

import abc
import asyncio
import wave
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Sequence

import numpy as np
import structlog

from .storage import MUTE_KEY, LocalStorage, StorageError

log = structlog.get_logger()

DEFAULT_SAMPLE_RATE = 44100
ATTACK_SECONDS = 0.02
DECAY_FLOOR = 0.01
TAIL_SECONDS = 0.1


@dataclass(frozen=True)
class Tone:
    frequency: float
    start: float
    duration: float
    volume: float = 0.3
    waveform: str = "sine"


SUCCESS_CUE: tuple[Tone, ...] = (
    Tone(523.25, 0.00, 0.15, 0.3),  # C5
    Tone(659.25, 0.12, 0.15, 0.3),  # E5
    Tone(783.99, 0.24, 0.25, 0.4),  # G5
)

ERROR_CUE: tuple[Tone, ...] = (
    Tone(440.0, 0.0, 0.2, 0.4, "square"),  # A4
    Tone(330.0, 0.2, 0.3, 0.4, "square"),  # E4
)


def _envelope(t: np.ndarray, duration: float, peak: float) -> np.ndarray:
    env = np.zeros_like(t)
    if peak <= 0:
        return env
    floor = min(DECAY_FLOOR, peak)

    attack = t < ATTACK_SECONDS
    env[attack] = peak * t[attack] / ATTACK_SECONDS

    decay = (t >= ATTACK_SECONDS) & (t < duration)
    span = max(duration - ATTACK_SECONDS, 1e-6)
    env[decay] = peak * (floor / peak) ** ((t[decay] - ATTACK_SECONDS) / span)

    tail = t >= duration
    env[tail] = floor * np.clip(1.0 - (t[tail] - duration) / TAIL_SECONDS, 0.0, 1.0)
    return env


def render_tone(tone: Tone, sample_rate: int = DEFAULT_SAMPLE_RATE, gain: float = 1.0) -> np.ndarray:
    n = int(round((tone.duration + TAIL_SECONDS) * sample_rate))
    t = np.arange(n, dtype=np.float64) / sample_rate
    phase = 2 * np.pi * tone.frequency * t
    if tone.waveform == "square":
        osc = np.sign(np.sin(phase))
    elif tone.waveform == "sine":
        osc = np.sin(phase)
    else:
        raise ValueError(f"unsupported waveform: {tone.waveform}")
    return osc * _envelope(t, tone.duration, tone.volume * gain)


def render_cue(
    tones: Sequence[Tone],
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    gain: float = 1.0,
) -> np.ndarray:
    """Mix a tone sequence into one float32 buffer clipped to [-1, 1]."""
    if not tones:
        return np.zeros(0, dtype=np.float32)
    end = max(t.start + t.duration + TAIL_SECONDS for t in tones)
    out = np.zeros(int(round(end * sample_rate)) + 1, dtype=np.float64)
    for tone in tones:
        samples = render_tone(tone, sample_rate, gain)
        offset = int(round(tone.start * sample_rate))
        stop = min(offset + len(samples), len(out))
        out[offset:stop] += samples[: stop - offset]
    return np.clip(out, -1.0, 1.0).astype(np.float32)


# --- Sinks ---


class AudioSink(abc.ABC):
    @abc.abstractmethod
    def play(self, samples: np.ndarray, sample_rate: int, cue: str) -> None:
        ...


class NullSink(AudioSink):
    def play(self, samples: np.ndarray, sample_rate: int, cue: str) -> None:
        log.debug("audio.cue", cue=cue, seconds=round(len(samples) / sample_rate, 3))


class BufferSink(AudioSink):
    """Keeps every rendered cue in memory."""

    def __init__(self) -> None:
        self.played: list[tuple[str, np.ndarray]] = []

    def play(self, samples: np.ndarray, sample_rate: int, cue: str) -> None:
        self.played.append((cue, samples))


class WavFileSink(AudioSink):
    """Writes each cue as a 16-bit mono WAV file."""

    def __init__(self, directory: str | Path):
        self._directory = Path(directory)
        self._count = 0

    def play(self, samples: np.ndarray, sample_rate: int, cue: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        self._count += 1
        path = self._directory / f"{cue}-{self._count:04d}.wav"
        pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2")
        with wave.open(str(path), "wb") as f:
            f.setnchannels(1)
            f.setsampwidth(2)
            f.setframerate(sample_rate)
            f.writeframes(pcm.tobytes())
        log.debug("audio.cue_written", cue=cue, path=str(path))


# --- Engine ---


@dataclass(frozen=True)
class MuteState:
    muted: bool = False
    volume: float = 1.0


MuteListener = Callable[[MuteState], None]


class AudioCueEngine:
    """Plays success/error cues and owns the persisted mute state."""

    def __init__(
        self,
        sink: AudioSink | None = None,
        storage: LocalStorage | None = None,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
    ):
        self._sink = sink or NullSink()
        self._storage = storage
        self._sample_rate = sample_rate
        self._state = MuteState()
        self._listeners: list[MuteListener] = []
        self._writes: set[asyncio.Task] = set()

    @property
    def state(self) -> MuteState:
        return self._state

    @property
    def muted(self) -> bool:
        return self._state.muted

    @property
    def volume(self) -> float:
        return self._state.volume

    async def load(self) -> None:
        """Restore the persisted mute state; absent or unreadable means defaults."""
        if self._storage is None:
            return
        try:
            data = await self._storage.get(MUTE_KEY)
        except StorageError as exc:
            log.warning("audio.load_failed", error=str(exc))
            return

        if isinstance(data, bool):
            self._apply(replace(self._state, muted=data), persist=False)
        elif isinstance(data, dict):
            volume = data.get("volume", self._state.volume)
            if not isinstance(volume, (int, float)):
                volume = self._state.volume
            self._apply(
                MuteState(
                    muted=bool(data.get("muted", False)),
                    volume=min(max(float(volume), 0.0), 1.0),
                ),
                persist=False,
            )

    def subscribe(self, listener: MuteListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_muted(self, muted: bool) -> None:
        self._apply(replace(self._state, muted=bool(muted)))

    def toggle_muted(self) -> bool:
        self.set_muted(not self._state.muted)
        return self._state.muted

    def set_volume(self, volume: float) -> None:
        self._apply(replace(self._state, volume=min(max(float(volume), 0.0), 1.0)))

    def play_success(self) -> bool:
        return self._play("success", SUCCESS_CUE)

    def play_error(self) -> bool:
        return self._play("error", ERROR_CUE)

    def play(self, cue: str) -> bool:
        if cue == "success":
            return self.play_success()
        if cue == "error":
            return self.play_error()
        return False

    async def flush(self) -> None:
        """Wait for pending mute-state writes."""
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    def _play(self, cue: str, tones: Sequence[Tone]) -> bool:
        if self._state.muted:
            return False
        try:
            samples = render_cue(tones, self._sample_rate, self._state.volume)
            self._sink.play(samples, self._sample_rate, cue)
        except Exception as exc:
            log.warning("audio.unavailable", cue=cue, error=str(exc))
            return False
        return True

    def _apply(self, new_state: MuteState, persist: bool = True) -> None:
        if new_state == self._state:
            return
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                log.exception("audio.listener_error")
        if persist:
            self._persist(new_state)

    def _persist(self, state: MuteState) -> None:
        if self._storage is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("audio.persist_skipped", reason="no running loop")
            return
        task = loop.create_task(self._write(state))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _write(self, state: MuteState) -> None:
        try:
            await self._storage.set(MUTE_KEY, {"muted": state.muted, "volume": state.volume})
        except StorageError as exc:
            log.warning("audio.persist_failed", error=str(exc))
