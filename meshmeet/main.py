"""Interactive meeting client."""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from .config import Config
from .errors import SessionStateError, SignalingUnavailable
from .invite import parse_join_code
from .session import SessionCoordinator
from .transport.rtc import RtcPeerTransport

LOGGER = logging.getLogger(__name__)

HELP = """Commands:
  <text>            send a chat message (@gemini <question> asks the assistant)
  /mute             toggle microphone
  /camera           toggle camera
  /blur             toggle background blur
  /share            toggle the screen-sharing flag
  /react <emoji>    send a reaction
  /who              list participants
  /ask <question>   ask the assistant
  /summary          summarize the chat
  /link             print the join link
  /reconnect        retry the rendezvous connection
  /leave            leave and return to the lobby
  /quit             leave and exit"""


def setup_logging() -> None:
	log_format = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'
	logging.basicConfig(level=logging.INFO, format=log_format)
	logging.getLogger('meshmeet').setLevel(logging.DEBUG)
	logging.getLogger('aioice').setLevel(logging.WARNING)
	logging.getLogger('aiortc').setLevel(logging.WARNING)
	logging.getLogger('asyncio').setLevel(logging.WARNING)


def describe(participant: dict) -> str:
	flags = [name for name in ('muted', 'camera_off', 'blurred', 'screen_sharing') if participant[name]]
	label = participant['display_name'] + (' (you)' if participant['is_local'] else '')
	if participant['is_originator']:
		label += ' [host]'
	extra = f" {' '.join(participant['reactions'])}" if participant['reactions'] else ''
	return f"  {label} <{participant['peer_id']}> {', '.join(flags) or 'live'}{extra}"


async def handle_command(session: SessionCoordinator, command: str) -> bool:
	"""Run one command; returns False when the client should exit."""
	name, _, arg = command.partition(' ')
	arg = arg.strip()
	if name == '/quit':
		return False
	if name == '/help':
		print(HELP)
	elif name == '/mute':
		await session.set_muted(not session.muted)
		LOGGER.info('Microphone %s', 'muted' if session.muted else 'live')
	elif name == '/camera':
		await session.set_camera_off(not session.camera_off)
		LOGGER.info('Camera %s', 'off' if session.camera_off else 'on')
	elif name == '/blur':
		await session.set_blurred(not session.blurred)
		LOGGER.info('Background blur %s', 'on' if session.blurred else 'off')
	elif name == '/share':
		session.set_screen_sharing(not session.screen_sharing)
	elif name == '/react':
		try:
			session.react(arg)
		except ValueError as e:
			LOGGER.warning('%s', e)
	elif name == '/who':
		for participant in session.participants():
			print(describe(participant))
	elif name == '/ask':
		await session.ask_assistant(arg)
	elif name == '/summary':
		await session.summarize_chat()
	elif name == '/link':
		print(session.join_link() or 'Not in a meeting')
	elif name == '/reconnect':
		if await session.reconnect():
			LOGGER.info('Reconnected to rendezvous service')
	elif name == '/leave':
		await session.leave()
		LOGGER.info('Back in the lobby. Type /quit to exit.')
	elif name.startswith('/'):
		LOGGER.warning('Unknown command %s (try /help)', name)
	else:
		await session.send_chat(command)
	return True


async def interactive_loop(session: SessionCoordinator) -> None:
	LOGGER.info('\n' + '=' * 60)
	LOGGER.info('meshmeet - meeting %s', session.meeting_id)
	LOGGER.info('Join link: %s', session.join_link())
	LOGGER.info('=' * 60)
	LOGGER.info('Type /help for commands.')

	while True:
		try:
			command = (await asyncio.to_thread(input, 'You: ')).strip()
		except (EOFError, KeyboardInterrupt):
			LOGGER.info('\nExiting...')
			break
		if not command:
			continue
		try:
			if not await handle_command(session, command):
				break
		except SessionStateError as e:
			LOGGER.warning('%s', e)
		except Exception:
			LOGGER.exception('Error processing command')


async def main() -> None:
	setup_logging()

	if not Config.validate():
		sys.exit(1)
	Config.log_config()

	display_name = os.getenv('MEET_DISPLAY_NAME', '').strip()
	if not display_name:
		display_name = (await asyncio.to_thread(input, 'Your name: ')).strip()
	host_id = parse_join_code(os.getenv('MEET_JOIN_CODE', ''))

	session = SessionCoordinator(RtcPeerTransport)

	def show(message) -> None:
		if message.sender_id != session.peer_id:
			print(f"\n{message.sender_name}: {message.text}")

	session.chat.add_listener(show)
	try:
		await session.preview()
		try:
			await session.join(display_name, host_id=host_id)
		except (SessionStateError, SignalingUnavailable) as e:
			LOGGER.error('Could not join: %s', e)
			sys.exit(1)
		await interactive_loop(session)
	finally:
		await session.shutdown()


def run() -> None:
	try:
		asyncio.run(main())
	except KeyboardInterrupt:
		LOGGER.info('\nInterrupted.')


if __name__ == '__main__':
	run()
