"""Meeting assistant backed by Gemini.

Both calls are stateless request/response. Failures never raise: each one
returns a fixed sentinel string that is shown in the chat like any answer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from browser_use.llm.google.chat import ChatGoogle
from browser_use.llm.messages import UserMessage

from .config import Config
from .models import ChatMessage

logger = logging.getLogger(__name__)

MISSING_KEY = 'API Key not configured.'
EMPTY_SUMMARY = 'Could not generate summary.'
SUMMARY_FAILED = 'Error connecting to AI Assistant.'
EMPTY_ANSWER = "I didn't understand that."
ANSWER_FAILED = "I'm having trouble thinking right now."

SUMMARY_PROMPT = """You are an expert meeting secretary.
Please provide a concise summary of the following meeting chat transcript.
Highlight key decisions and action items if any.

Transcript:
{transcript}
"""

ANSWER_PROMPT = """You are a helpful AI assistant in a video conference meeting.

Context from recent chat:
{context}

User Question: {query}

Answer concisely and helpfully.
"""


def format_transcript(messages: Iterable[ChatMessage]) -> str:
	return '\n'.join(f'{message.sender_name}: {message.text}' for message in messages if not message.is_system)


class MeetingAssistant:
	"""Summarizes the chat and answers questions about it."""

	def __init__(
		self,
		llm: Any = None,
		*,
		api_key: Optional[str] = None,
		timeout: Optional[float] = None,
		context_messages: Optional[int] = None,
	) -> None:
		self.api_key = Config.GEMINI_API_KEY if api_key is None else api_key
		self.timeout = Config.ASSISTANT_TIMEOUT if timeout is None else timeout
		self.context_messages = Config.ASSISTANT_CONTEXT_MESSAGES if context_messages is None else context_messages
		self._llm = llm

	@property
	def configured(self) -> bool:
		return bool(self.api_key) or self._llm is not None

	def _build_llm(self):
		return ChatGoogle(
			model=Config.GEMINI_MODEL,
			api_key=self.api_key,
			temperature=Config.GEMINI_TEMPERATURE,
			max_retries=3,
			retryable_status_codes=[403, 503, 429],
			retry_delay=2.0,
		)

	async def _complete(self, prompt: str) -> str:
		if self._llm is None:
			self._llm = self._build_llm()
		response = await asyncio.wait_for(self._llm.ainvoke([UserMessage(content=prompt)]), timeout=self.timeout)
		text = response.completion if hasattr(response, 'completion') else str(response)
		return (text or '').strip()

	async def summarize(self, messages: Iterable[ChatMessage]) -> str:
		if not self.configured:
			return MISSING_KEY
		prompt = SUMMARY_PROMPT.format(transcript=format_transcript(messages))
		try:
			text = await self._complete(prompt)
		except Exception as e:
			logger.error('Summary request failed: %s', e, exc_info=True)
			return SUMMARY_FAILED
		return text or EMPTY_SUMMARY

	async def answer(self, query: str, context: Iterable[ChatMessage]) -> str:
		if not self.configured:
			return MISSING_KEY
		recent = list(context)[-self.context_messages:] if self.context_messages > 0 else []
		prompt = ANSWER_PROMPT.format(context=format_transcript(recent), query=query)
		try:
			text = await self._complete(prompt)
		except Exception as e:
			logger.error('Assistant request failed: %s', e, exc_info=True)
			return ANSWER_FAILED
		return text or EMPTY_ANSWER
