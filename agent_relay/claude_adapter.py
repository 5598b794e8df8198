"""
Claude adapter built on the Claude Agent SDK.

Each user message runs one ``query()`` call with partial messages enabled.
SDK messages are reduced to the Anthropic stream-json shapes
(``assistant``, ``content_block_delta``, ``tool_result``, ``result`` ...)
and translated into canonical events by ``translate_event``.
"""

import asyncio
import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    query,
)
from claude_agent_sdk.types import StreamEvent

from .agent_adapter import (
    AdapterSignalsMixin,
    AgentFeatures,
    AgentInfo,
    AgentStartOptions,
)
from .events import (
    ErrorEvent,
    MessageEvent,
    ResultEvent,
    ThinkingEvent,
    TokenUsage,
    ToolResultEvent,
    ToolUseEvent,
)
from .retry import RetryConfig, is_retryable_error

logger = logging.getLogger(__name__)

QueryFn = Callable[..., AsyncIterator[Any]]


def build_cwd_context(cwd: str) -> str:
    """System prompt preamble pinning file paths to the working directory."""
    return '\n'.join(
        [
            '## Environment',
            '',
            f'Working directory: {cwd}',
            '',
            'IMPORTANT: All file paths MUST be relative to the working directory above, '
            f'or absolute paths starting with exactly `{cwd}/`.',
            'Never construct absolute paths by guessing usernames, directory structures, '
            'or paths from code snippets.',
            'If a file path fails, retry using a path relative to the working directory.',
            '',
        ]
    )


@dataclass
class ConversationToolUse:
    id: str
    name: str
    input: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None


@dataclass
class ConversationMessage:
    role: str
    content: str
    timestamp: int
    tool_uses: List[ConversationToolUse] = field(default_factory=list)


@dataclass
class ConversationContext:
    """Serializable snapshot used to save and restore a Claude run."""

    messages: List[ConversationMessage] = field(default_factory=list)
    last_prompt: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    timestamp: int = 0


def _block_to_native(block: Any) -> Optional[Dict[str, Any]]:
    if isinstance(block, dict):
        return block
    if isinstance(block, TextBlock):
        return {'type': 'text', 'text': block.text}
    if isinstance(block, ThinkingBlock):
        return {'type': 'thinking', 'thinking': block.thinking}
    if isinstance(block, ToolUseBlock):
        return {
            'type': 'tool_use',
            'id': block.id,
            'name': block.name,
            'input': block.input,
        }
    if isinstance(block, ToolResultBlock):
        return {
            'type': 'tool_result',
            'tool_use_id': block.tool_use_id,
            'content': block.content,
            'is_error': block.is_error,
        }
    return None


def _content_to_blocks(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return [{'type': 'text', 'text': content}]
    blocks = []
    for block in content or []:
        native = _block_to_native(block)
        if native is not None:
            blocks.append(native)
    return blocks


def _stringify_tool_content(content: Any) -> Optional[str]:
    """Tool result content may be a string or a list of text blocks."""
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get('type') == 'text':
                parts.append(str(item.get('text', '')))
            elif isinstance(item, str):
                parts.append(item)
        return '\n'.join(parts)
    return str(content)


def _message_blocks(native: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Content blocks of an ``assistant``/``user`` event; anything else is skipped."""
    message = native.get('message')
    if not isinstance(message, dict):
        return []
    content = message.get('content')
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


class ClaudeAdapter(AdapterSignalsMixin):
    """Drives Claude through ``claude_agent_sdk.query``."""

    adapter_id = 'claude'

    def __init__(
        self,
        api_key: Optional[str] = None,
        query_fn: Optional[QueryFn] = None,
        retry_config: Optional[RetryConfig] = None,
        max_thinking_tokens: int = 0,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        super().__init__()
        self.api_key = api_key
        self.query_fn: QueryFn = query_fn or query
        self.retry_config = retry_config or RetryConfig()
        self.max_thinking_tokens = max_thinking_tokens
        self._sleep = sleep or asyncio.sleep

        self.session_id: Optional[str] = None
        self._message_buffer = ''
        self._pending_tool_uses: Dict[str, Dict[str, Any]] = {}
        self._conversation: List[ConversationMessage] = []
        self._current_assistant: Optional[ConversationMessage] = None
        self._last_prompt: Optional[str] = None
        self._total_usage = TokenUsage()

    def get_info(self) -> AgentInfo:
        return AgentInfo(
            id='claude',
            name='Claude',
            description='Anthropic Claude via the Claude Agent SDK',
            features=AgentFeatures(
                streaming=True,
                tools=True,
                pause_resume=False,
                system_prompt=True,
            ),
        )

    async def is_available(self) -> bool:
        try:
            return bool(self.api_key or os.getenv('ANTHROPIC_API_KEY'))
        except Exception:
            return False

    @property
    def pending_tool_uses(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._pending_tool_uses)

    @property
    def accumulated_text(self) -> str:
        return self._message_buffer

    def _on_start(self, options: AgentStartOptions) -> None:
        self._message_buffer = ''
        self._pending_tool_uses.clear()
        self._conversation = []
        self._current_assistant = None
        self._last_prompt = None
        self._total_usage = TokenUsage()
        self.session_id = None

    # ------------------------------------------------------------------
    # Conversation context
    # ------------------------------------------------------------------

    def get_conversation_context(self) -> ConversationContext:
        return ConversationContext(
            messages=list(self._conversation),
            last_prompt=self._last_prompt,
            usage=self._total_usage.model_copy(),
            timestamp=self._timestamp(),
        )

    def restore_conversation_context(self, context: ConversationContext) -> None:
        """Restore tracked state only; the conversation is not replayed."""
        self._conversation = list(context.messages)
        self._last_prompt = context.last_prompt
        self._total_usage = context.usage.model_copy()

    def clear_conversation_context(self) -> None:
        self._conversation = []
        self._current_assistant = None
        self._last_prompt = None
        self._total_usage = TokenUsage()

    def conversation_snapshot(self) -> Dict[str, Any]:
        """The conversation context as plain data, for persistence."""
        snapshot = self.get_conversation_context()
        data = asdict(snapshot)
        data['usage'] = snapshot.usage.model_dump(by_alias=True)
        return data

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    def _build_options(self, resume: Optional[str]) -> ClaudeAgentOptions:
        options = self._options or AgentStartOptions()

        system_prompt = options.system_prompt
        if options.cwd:
            cwd_context = build_cwd_context(options.cwd)
            system_prompt = cwd_context + system_prompt if system_prompt else cwd_context.strip()

        env = dict(options.env)
        if self.api_key:
            env['ANTHROPIC_API_KEY'] = self.api_key

        kwargs: Dict[str, Any] = {
            'model': options.model,
            'cwd': options.cwd,
            'env': env,
            'system_prompt': system_prompt,
            'permission_mode': 'bypassPermissions',
            'include_partial_messages': True,
            'max_turns': options.max_iterations,
            'resume': resume,
        }
        if options.allowed_tools is not None:
            kwargs['allowed_tools'] = list(options.allowed_tools)
        if self.max_thinking_tokens > 0:
            kwargs['max_thinking_tokens'] = self.max_thinking_tokens
        kwargs.update(options.extra)
        return ClaudeAgentOptions(**{k: v for k, v in kwargs.items() if v is not None})

    async def _run_turn(self, content: str) -> None:
        self._message_buffer = ''
        self._last_prompt = content
        self._conversation.append(
            ConversationMessage(role='user', content=content, timestamp=self._timestamp())
        )
        self._current_assistant = ConversationMessage(
            role='assistant', content='', timestamp=self._timestamp()
        )

        config = self.retry_config
        attempt = 0
        last_error: Optional[Exception] = None

        while attempt <= config.max_retries:
            resume = self.session_id if attempt > 0 and self.session_id else None
            if resume:
                self._emit(
                    ErrorEvent(
                        timestamp=self._timestamp(),
                        message=f'Resuming session {resume} from last checkpoint...',
                        code='RESUMING',
                        fatal=False,
                    )
                )

            try:
                prompt = '' if resume else content
                async for message in self.query_fn(
                    prompt=prompt, options=self._build_options(resume)
                ):
                    self._handle_sdk_message(message)
                    if not self.is_running:
                        return
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if not is_retryable_error(e) or attempt >= config.max_retries:
                    break

                delay_ms = config.delay_for(attempt)
                logger.warning(
                    f'Claude query failed ({e}), retrying in {delay_ms}ms '
                    f'(attempt {attempt + 1}/{config.max_retries})'
                )
                self._emit(
                    ErrorEvent(
                        timestamp=self._timestamp(),
                        message=(
                            f'Connection error: {e}. Retrying in {round(delay_ms / 1000)} '
                            f'seconds... (attempt {attempt + 1}/{config.max_retries})'
                        ),
                        code='RETRY',
                        fatal=False,
                    )
                )
                await self._sleep(delay_ms / 1000)
                attempt += 1

        if last_error is not None:
            self._emit_fatal(str(last_error) or 'Claude query failed')

    def _handle_sdk_message(self, message: Any) -> None:
        session_id = getattr(message, 'session_id', None)
        if isinstance(message, dict):
            session_id = message.get('session_id')
        if session_id:
            self.session_id = session_id

        native = self._to_native(message)
        if native is not None:
            self.translate_event(native)

    def _to_native(self, message: Any) -> Optional[Dict[str, Any]]:
        """Reduce an SDK message object to a stream-json dict."""
        if isinstance(message, dict):
            if message.get('type') == 'stream_event' and isinstance(message.get('event'), dict):
                return message['event']
            return message
        if isinstance(message, StreamEvent):
            return message.event
        if isinstance(message, AssistantMessage):
            return {'type': 'assistant', 'message': {'content': _content_to_blocks(message.content)}}
        if isinstance(message, UserMessage):
            return {'type': 'user', 'message': {'content': _content_to_blocks(message.content)}}
        if isinstance(message, ResultMessage):
            return {
                'type': 'result',
                'subtype': message.subtype,
                'is_error': message.is_error,
                'result': message.result,
                'usage': message.usage,
                'session_id': message.session_id,
            }
        if isinstance(message, SystemMessage):
            return {'type': 'system', 'subtype': message.subtype, 'data': message.data}
        return None

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    def translate_event(self, native: Dict[str, Any]) -> None:
        """Translate one native stream-json event into canonical events."""
        kind = native.get('type')
        timestamp = self._timestamp()

        if kind == 'assistant':
            for block in _message_blocks(native):
                self._translate_assistant_block(block, timestamp)

        elif kind == 'user':
            for block in _message_blocks(native):
                if block.get('type') == 'tool_result':
                    self._translate_tool_result(block, timestamp)

        elif kind == 'content_block_start':
            block = native.get('content_block')
            if not isinstance(block, dict):
                return
            if block.get('type') == 'tool_use' and block.get('id') and block.get('name'):
                self._pending_tool_uses[block['id']] = {'tool': block['name'], 'input': {}}

        elif kind == 'content_block_delta':
            delta = native.get('delta')
            if not isinstance(delta, dict):
                return
            thinking = delta.get('thinking')
            text = delta.get('text')
            if delta.get('type') == 'thinking_delta' and thinking and isinstance(thinking, str):
                self._emit(
                    ThinkingEvent(timestamp=timestamp, content=thinking, is_partial=True)
                )
            elif delta.get('type') == 'text_delta' and text and isinstance(text, str):
                self._message_buffer += text
                if self._current_assistant is not None:
                    self._current_assistant.content += text
                self._emit(MessageEvent(timestamp=timestamp, content=text, is_partial=True))

        elif kind == 'tool_use':
            self._record_tool_use(native.get('id'), native.get('name'), native.get('input'), timestamp)

        elif kind == 'tool_result':
            self._translate_tool_result(native, timestamp)

        elif kind == 'result':
            self._translate_result(native, timestamp)

        elif kind == 'error':
            error = native.get('error')
            if isinstance(error, dict):
                error = error.get('message')
            message = error if isinstance(error, str) else native.get('message')
            if not isinstance(message, str):
                message = 'Unknown error'
            self._emit_fatal(message, code=native.get('code'))

        # message_start / message_delta / message_stop / content_block_stop,
        # system and anything unknown carry no canonical content.

    def _translate_assistant_block(self, block: Dict[str, Any], timestamp: int) -> None:
        block_type = block.get('type')
        if block_type == 'thinking' and isinstance(block.get('thinking'), str) and block['thinking']:
            self._emit(ThinkingEvent(timestamp=timestamp, content=block['thinking'], is_partial=False))
        elif block_type == 'text' and isinstance(block.get('text'), str) and block['text']:
            self._message_buffer = block['text']
            if self._current_assistant is not None:
                self._current_assistant.content = block['text']
            self._emit(MessageEvent(timestamp=timestamp, content=block['text'], is_partial=False))
        elif block_type == 'tool_use':
            self._record_tool_use(block.get('id'), block.get('name'), block.get('input'), timestamp)

    def _record_tool_use(
        self, tool_use_id: Optional[str], tool: Optional[str], tool_input: Any, timestamp: int
    ) -> None:
        if not isinstance(tool_use_id, str) or not isinstance(tool, str) or not tool_use_id or not tool:
            return
        tool_input = tool_input if isinstance(tool_input, dict) else {}
        self._pending_tool_uses[tool_use_id] = {'tool': tool, 'input': tool_input}
        if self._current_assistant is not None:
            self._current_assistant.tool_uses.append(
                ConversationToolUse(id=tool_use_id, name=tool, input=tool_input)
            )
        self._emit(
            ToolUseEvent(timestamp=timestamp, tool_use_id=tool_use_id, tool=tool, input=tool_input)
        )

    def _translate_tool_result(self, native: Dict[str, Any], timestamp: int) -> None:
        tool_use_id = native.get('tool_use_id')
        if not isinstance(tool_use_id, str):
            tool_use_id = ''
        output = _stringify_tool_content(native.get('content'))
        is_error = bool(native.get('is_error'))
        error = (output or 'Unknown error') if is_error else None
        output = None if is_error else output

        if self._current_assistant is not None:
            for tool_use in self._current_assistant.tool_uses:
                if tool_use.id == tool_use_id:
                    tool_use.result = {'output': output, 'error': error, 'isError': is_error}

        self._pending_tool_uses.pop(tool_use_id, None)
        self._emit(
            ToolResultEvent(
                timestamp=timestamp,
                tool_use_id=tool_use_id,
                output=output,
                error=error,
                is_error=is_error,
            )
        )

    def _translate_result(self, native: Dict[str, Any], timestamp: int) -> None:
        subtype = native.get('subtype')
        if subtype is not None and subtype != 'success':
            self._emit_fatal(f'Query failed: {subtype}')
            return

        result = native.get('result')
        content = result if isinstance(result, str) else self._message_buffer

        if self._current_assistant is not None:
            if isinstance(result, str):
                self._current_assistant.content = result
            self._conversation.append(self._current_assistant)
            self._current_assistant = None

        usage = self._extract_usage(native.get('usage'))
        if usage is not None:
            input_tokens = self._total_usage.input_tokens + usage.input_tokens
            output_tokens = self._total_usage.output_tokens + usage.output_tokens
            self._total_usage = TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            )

        self._message_buffer = ''
        if not content:
            logger.debug('Claude turn completed without content, no result emitted')
            return
        self._emit(ResultEvent(timestamp=timestamp, content=content, usage=usage))

    @staticmethod
    def _extract_usage(raw: Any) -> Optional[TokenUsage]:
        if not isinstance(raw, dict):
            return None
        try:
            input_tokens = (
                int(raw.get('input_tokens') or 0)
                + int(raw.get('cache_read_input_tokens') or 0)
                + int(raw.get('cache_creation_input_tokens') or 0)
            )
            output_tokens = int(raw.get('output_tokens') or 0)
        except (TypeError, ValueError):
            logger.debug(f'Ignoring unreadable usage payload: {raw!r}')
            return None
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )
