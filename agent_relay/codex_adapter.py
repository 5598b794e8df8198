"""
Codex adapter driving the ``codex exec --json`` CLI.

Every user message spawns one ``codex exec`` process and translates its
JSONL stdout into canonical events.
"""

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .agent_adapter import (
    AdapterSignalsMixin,
    AgentFeatures,
    AgentInfo,
    AgentStartOptions,
)
from .events import (
    MessageEvent,
    ResultEvent,
    ThinkingEvent,
    TokenUsage,
    ToolResultEvent,
    ToolUseEvent,
)

logger = logging.getLogger(__name__)

ProcessFactory = Callable[..., Awaitable[Any]]

# Codex JSON lines can exceed the default 64KB StreamReader limit.
STREAM_LIMIT = 16 * 1024 * 1024


class CodexAdapter(AdapterSignalsMixin):
    """Drives the OpenAI Codex CLI in non-interactive JSON mode."""

    adapter_id = 'codex'

    def __init__(
        self,
        command: str = 'codex',
        process_factory: Optional[ProcessFactory] = None,
    ):
        super().__init__()
        self.command = command
        self._process_factory = process_factory or asyncio.create_subprocess_exec
        self._process: Optional[Any] = None
        self._accumulated_message = ''
        self._pending_tool_uses: Dict[str, Dict[str, Any]] = {}
        self._saw_error = False

    def get_info(self) -> AgentInfo:
        return AgentInfo(
            id='codex',
            name='Codex',
            description='OpenAI Codex CLI in non-interactive JSON mode',
            features=AgentFeatures(
                streaming=True,
                tools=True,
                pause_resume=False,
                system_prompt=False,
            ),
        )

    async def is_available(self) -> bool:
        try:
            process = await self._process_factory(
                self.command,
                '--version',
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            return await process.wait() == 0
        except Exception as e:
            logger.debug(f'Codex CLI not available: {e}')
            return False

    @property
    def pending_tool_uses(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._pending_tool_uses)

    def _on_start(self, options: AgentStartOptions) -> None:
        self._accumulated_message = ''
        self._pending_tool_uses.clear()

    def build_args(self, prompt: str) -> List[str]:
        options = self._options or AgentStartOptions()
        args = ['exec', '--json']
        if options.model:
            args.extend(['--model', options.model])
        args.append('--skip-git-repo-check')
        args.append('--full-auto')
        args.extend(['--', prompt])
        return args

    async def _run_turn(self, content: str) -> None:
        options = self._options or AgentStartOptions()
        self._accumulated_message = ''
        self._saw_error = False

        env = os.environ.copy()
        env.update(options.env)

        process = await self._process_factory(
            self.command,
            *self.build_args(content),
            cwd=options.cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
        self._process = process
        logger.info(f'Started codex process (pid={getattr(process, "pid", None)})')

        async def _read_stdout():
            if process.stdout is None:
                return
            while True:
                line_bytes = await process.stdout.readline()
                if not line_bytes:
                    break  # EOF
                self.handle_line(line_bytes.decode('utf-8', errors='replace'))
                if not self.is_running:
                    # A fatal error or stop ended the run; nothing more is relayed
                    if process.returncode is None:
                        process.kill()
                    break

        async def _read_stderr():
            if process.stderr is None:
                return
            while True:
                line_bytes = await process.stderr.readline()
                if not line_bytes:
                    break
                message = line_bytes.decode('utf-8', errors='replace').strip()
                if message:
                    # stderr carries warnings as well as failures
                    logger.debug(f'codex stderr: {message}')

        try:
            await asyncio.gather(_read_stdout(), _read_stderr())
            returncode = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        finally:
            self._process = None

        if returncode and not self._saw_error and self.is_running:
            self._emit_fatal(f'Codex exited with code {returncode}')

    def handle_line(self, line: str) -> None:
        """Parse one JSONL line; anything that is not a JSON object is ignored."""
        line = line.strip()
        if not line:
            return
        try:
            native = json.loads(line)
        except json.JSONDecodeError:
            return  # Not JSON, skip
        if isinstance(native, dict):
            self.translate_event(native)

    def translate_event(self, native: Dict[str, Any]) -> None:
        kind = native.get('type')
        timestamp = self._timestamp()

        if kind == 'turn.started':
            self._accumulated_message = ''

        elif kind == 'turn.completed':
            if not self._accumulated_message:
                return
            self._emit(
                ResultEvent(
                    timestamp=timestamp,
                    content=self._accumulated_message,
                    usage=self._extract_usage(native.get('usage')),
                )
            )

        elif kind == 'item.started':
            item = native.get('item')
            if not isinstance(item, dict):
                return
            tool_use_id = _item_id(item)
            command = item.get('command')
            if item.get('type') == 'command_execution' and command and isinstance(command, str):
                tool_input = {'command': command}
                self._pending_tool_uses[tool_use_id] = {'tool': 'bash', 'input': tool_input}
                self._emit(
                    ToolUseEvent(
                        timestamp=timestamp,
                        tool_use_id=tool_use_id,
                        tool='bash',
                        input=tool_input,
                    )
                )

        elif kind == 'item.completed':
            item = native.get('item')
            if isinstance(item, dict):
                self._translate_completed_item(item, timestamp)

        elif kind == 'error':
            error = native.get('error')
            if isinstance(error, dict):
                error = error.get('message')
            message = error if isinstance(error, str) else native.get('message')
            if not isinstance(message, str):
                message = 'Unknown error'
            self._saw_error = True
            self._emit_fatal(message, code=native.get('code'))

        # thread.started and unknown types are ignored

    def _translate_completed_item(self, item: Dict[str, Any], timestamp: int) -> None:
        item_type = item.get('type')
        text = item.get('text')
        if not isinstance(text, str):
            text = ''
        if item_type == 'agent_message' and text:
            self._accumulated_message += text + '\n'
            self._emit(MessageEvent(timestamp=timestamp, content=text, is_partial=False))
        elif item_type == 'reasoning' and text:
            self._emit(ThinkingEvent(timestamp=timestamp, content=text, is_partial=False))
        elif item_type == 'command_execution':
            tool_use_id = _item_id(item)
            output = item.get('aggregated_output') or ''
            if not isinstance(output, str):
                output = str(output)
            exit_code = item.get('exit_code')
            is_error = exit_code != 0
            self._pending_tool_uses.pop(tool_use_id, None)
            self._emit(
                ToolResultEvent(
                    timestamp=timestamp,
                    tool_use_id=tool_use_id,
                    output=None if is_error else output,
                    error=(output or f'Command failed with exit code {exit_code}') if is_error else None,
                    is_error=is_error,
                )
            )

    @staticmethod
    def _extract_usage(raw: Any) -> Optional[TokenUsage]:
        if not isinstance(raw, dict):
            return None
        try:
            input_tokens = int(raw.get('input_tokens') or 0) + int(raw.get('cached_input_tokens') or 0)
            output_tokens = int(raw.get('output_tokens') or 0)
        except (TypeError, ValueError):
            logger.debug(f'Ignoring unreadable usage payload: {raw!r}')
            return None
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )


def _item_id(item: Dict[str, Any]) -> str:
    item_id = item.get('id')
    return item_id if isinstance(item_id, str) else ''
