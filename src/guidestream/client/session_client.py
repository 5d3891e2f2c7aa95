"""Session CLI - terminal client for the guided session channel.

Connects to ``/api/session/ws``, plays the streamed sentence audio without
gaps and prints each sentence as its audio starts.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Callable, Optional, assert_never

import websockets
from rich.console import Console
from rich.panel import Panel
from rich.style import Style

from ..ws.protocol import (
    EndMessage,
    ErrorMessage,
    HeartbeatMessage,
    PauseMessage,
    PhaseStartMessage,
    PhaseTransitionMessage,
    ResumeMessage,
    SentenceEndMessage,
    ServerMessage,
    SessionEndMessage,
    SessionStartMessage,
    StartSessionMessage,
    TextMessage,
    dump_message,
    parse_server_message,
)
from .audio import DEFAULT_SAMPLE_RATE, AudioDecoder, PcmDecoder, load_pcm_file
from .mixer import SOUNDSCAPES, AmbientLayer
from .output import AudioOutput, LoopAudioOutput, SoundDeviceOutput
from .playback import AudioPlaybackQueue, PlaybackState

logger = logging.getLogger(__name__)

FALLBACK_CAPTION_SECONDS = 4.0

# Styles
CAPTION_STYLE = Style(color="bright_green")
FALLBACK_STYLE = Style(color="yellow", italic=True)
PHASE_STYLE = Style(color="bright_blue", bold=True)
ERROR_STYLE = Style(color="red", bold=True)
INFO_STYLE = Style(color="cyan")

OutputFactory = Callable[[], AudioOutput]


class SessionClient:
    """Duplex client for one guided session."""

    def __init__(
        self,
        server_url: str,
        *,
        output_factory: OutputFactory,
        session_length: Optional[int] = None,
        mood: Optional[str] = None,
        voice_id: Optional[str] = None,
        decoder: Optional[AudioDecoder] = None,
        console: Optional[Console] = None,
        interactive: bool = True,
        fallback_seconds: float = FALLBACK_CAPTION_SECONDS,
    ):
        self.server_url = server_url
        self.session_length = session_length
        self.mood = mood
        self.voice_id = voice_id
        self.session_id: Optional[str] = None
        self.console = console or Console()
        self.interactive = interactive
        self.fallback_seconds = fallback_seconds
        self.fallback_caption: Optional[str] = None
        self.finished = False

        self._output_factory = output_factory
        self._decoder = decoder or PcmDecoder()
        self._ws = None
        self._queue: Optional[AudioPlaybackQueue] = None
        self._current_text: Optional[str] = None
        self._chunks_in_sentence = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._fallback_handle: Optional[asyncio.TimerHandle] = None
        self._command_tasks: set[asyncio.Task[None]] = set()

    @property
    def queue(self) -> Optional[AudioPlaybackQueue]:
        return self._queue

    async def run(self) -> None:
        """Start a session and play it until the server ends it."""
        async with websockets.connect(self.server_url, max_size=None) as ws:
            self._ws = ws
            self._open_playback()
            await self._send(
                StartSessionMessage(
                    session_length=self.session_length,
                    mood=self.mood,
                    voice_id=self.voice_id,
                )
            )
            if self.interactive:
                self._attach_stdin()
                self.console.print(
                    "[bold]Guided session[/bold] - p pause, r resume, "
                    "v/a <0-1> volume, q end",
                    style=INFO_STYLE,
                )

            try:
                async for raw in ws:
                    if isinstance(raw, bytes):
                        self._handle_audio(raw)
                        continue
                    message = parse_server_message(raw)
                    if message is None:
                        logger.warning("Ignoring unrecognised server message: %s", raw)
                        continue
                    self._handle_message(message)
                    if self.finished:
                        break
            except websockets.ConnectionClosed as exc:
                logger.info("Connection closed: %s", exc)
            finally:
                self._detach_stdin()
                await self._finish_playback()
                self._ws = None

    def _open_playback(self) -> AudioPlaybackQueue:
        self._queue = AudioPlaybackQueue(
            self._output_factory(),
            self._decoder,
            on_state_change=self._on_state_change,
            on_caption=self._show_caption,
        )
        return self._queue

    def _handle_message(self, message: ServerMessage) -> None:
        match message:
            case SessionStartMessage():
                self.session_id = message.session_id
                self.console.print(f"[dim]Session {message.session_id[:8]}...[/dim]")
            case PhaseStartMessage():
                self.console.rule(message.phase.title(), style=PHASE_STYLE)
            case TextMessage():
                self._current_text = message.data
                self._chunks_in_sentence = 0
            case SentenceEndMessage():
                if self._chunks_in_sentence == 0 and self._current_text:
                    self._show_fallback(self._current_text)
                self._current_text = None
            case PhaseTransitionMessage():
                logger.debug("Phase %s -> %s", message.from_phase, message.to_phase)
            case SessionEndMessage():
                self.console.print("\n[dim]Session complete.[/dim]")
                self.finished = True
            case ErrorMessage():
                self.console.print(f"Error: {message.message}", style=ERROR_STYLE)
            case HeartbeatMessage():
                logger.debug("Heartbeat")
            case _:
                assert_never(message)

    def _handle_audio(self, data: bytes) -> None:
        if self._queue is None or self._queue.stopped:
            return
        caption = self._current_text if self._chunks_in_sentence == 0 else None
        self._chunks_in_sentence += 1
        self._queue.enqueue(data, caption)

    def _show_caption(self, caption: str) -> None:
        self.console.print(caption, style=CAPTION_STYLE)

    def _show_fallback(self, text: str) -> None:
        """Display a sentence that arrived without audio for a few seconds."""
        self.fallback_caption = text
        self.console.print(text, style=FALLBACK_STYLE)
        if self._fallback_handle is not None:
            self._fallback_handle.cancel()
        loop = asyncio.get_running_loop()
        self._fallback_handle = loop.call_later(self.fallback_seconds, self._clear_fallback)

    def _clear_fallback(self) -> None:
        self.fallback_caption = None
        self._fallback_handle = None

    def _on_state_change(self, state: PlaybackState) -> None:
        if state.is_playing or state.queue_length:
            self._idle.clear()
        else:
            self._idle.set()

    async def pause(self) -> None:
        await self._send(PauseMessage())
        if self._queue is not None:
            await self._queue.pause()
        self.console.print("[dim]Paused[/dim]")

    async def resume(self) -> None:
        await self._send(ResumeMessage())
        if self._queue is not None:
            await self._queue.resume()
        self.console.print("[dim]Resumed[/dim]")

    async def end(self) -> None:
        await self._send(EndMessage())
        if self._queue is not None:
            await self._queue.stop()
        self.finished = True

    async def _finish_playback(self) -> None:
        queue = self._queue
        if queue is None or queue.stopped:
            return
        if self.finished and not queue.state.is_paused:
            await queue.drain()
            await self._idle.wait()
        await queue.stop()

    async def _send(self, message) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(json.dumps(dump_message(message)))
        except websockets.ConnectionClosed:
            logger.debug("Dropped %s; connection already closed", message.type)

    def _attach_stdin(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_reader(sys.stdin.fileno(), self._on_stdin)
        except (NotImplementedError, ValueError, OSError) as exc:
            logger.warning("Interactive controls unavailable: %s", exc)
            self.interactive = False

    def _detach_stdin(self) -> None:
        if self.interactive:
            asyncio.get_running_loop().remove_reader(sys.stdin.fileno())

    def _on_stdin(self) -> None:
        line = sys.stdin.readline()
        if not line:
            self._detach_stdin()
            self.interactive = False
            return
        task = asyncio.create_task(self.handle_command(line))
        self._command_tasks.add(task)
        task.add_done_callback(self._command_tasks.discard)

    async def handle_command(self, line: str) -> None:
        """Apply one keyboard command."""
        parts = line.strip().lower().split()
        if not parts:
            return
        command, args = parts[0], parts[1:]

        if command in ("p", "pause"):
            await self.pause()
        elif command in ("r", "resume"):
            await self.resume()
        elif command in ("q", "quit", "end"):
            await self.end()
        elif command in ("v", "a") and args:
            try:
                value = float(args[0])
            except ValueError:
                self.console.print(f"Invalid volume: {args[0]}", style=ERROR_STYLE)
                return
            if self._queue is None:
                return
            if command == "v":
                self._queue.set_voice_volume(value)
            else:
                self._queue.set_ambient_volume(value)
        else:
            self.console.print(
                Panel(
                    "p  pause\nr  resume\nv <0-1>  voice volume\n"
                    "a <0-1>  ambient volume\nq  end session",
                    title="Commands",
                    border_style="blue",
                )
            )


def _load_ambient(name: str, sounds_dir: Path, sample_rate: int) -> AmbientLayer:
    if name == "silence":
        return AmbientLayer(name)
    path = sounds_dir / f"{name}.pcm"
    if not path.exists():
        logger.warning("Soundscape %s not found at %s; playing silence", name, path)
        return AmbientLayer(name)
    return AmbientLayer(name, load_pcm_file(str(path), sample_rate))


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Session CLI - play a guided session from the backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  guidestream-client                                  15 minute session on localhost
  guidestream-client --length 10 --mood anxious       Shorter session for an anxious mood
  guidestream-client --headless                       No audio device, captions only

Environment Variables:
  GUIDESTREAM_SERVER    Default WebSocket URL
""",
    )
    parser.add_argument(
        "--server",
        "-s",
        default=os.environ.get("GUIDESTREAM_SERVER", "ws://localhost:8000/api/session/ws"),
        help="Session WebSocket URL (default: ws://localhost:8000/api/session/ws)",
    )
    parser.add_argument("--length", "-l", type=int, default=None, help="Session length in minutes")
    parser.add_argument("--mood", "-m", default=None, help="Mood hint for the session")
    parser.add_argument("--voice", default=None, help="Voice id for synthesis")
    parser.add_argument(
        "--ambient",
        choices=SOUNDSCAPES,
        default="silence",
        help="Ambient soundscape looped under the voice",
    )
    parser.add_argument(
        "--sounds-dir",
        type=Path,
        default=Path(os.environ.get("GUIDESTREAM_SOUNDS_DIR", "sounds")),
        help="Directory holding <soundscape>.pcm files",
    )
    parser.add_argument(
        "--sample-rate",
        type=int,
        default=DEFAULT_SAMPLE_RATE,
        help="PCM sample rate of the server's audio",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Do not open an audio device; time playback on the event loop",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()
    _configure_logging(args.verbose)

    # Handle signals
    def signal_handler(sig, frame):
        print("\nExiting...")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    def output_factory() -> AudioOutput:
        if args.headless:
            return LoopAudioOutput()
        ambient = _load_ambient(args.ambient, args.sounds_dir, args.sample_rate)
        return SoundDeviceOutput(sample_rate=args.sample_rate, ambient=ambient)

    client = SessionClient(
        args.server,
        output_factory=output_factory,
        session_length=args.length,
        mood=args.mood,
        voice_id=args.voice,
        decoder=PcmDecoder(args.sample_rate),
        interactive=sys.stdin.isatty(),
    )
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
