import logging
from typing import Optional
from .clients.abs_client import RemoteError
from .directives import SkillResponse, respond
from .engine import SERVER_APOLOGY, SOMETHING_WRONG, Outcome, SessionController
from .events import (
    UNSUPPORTED_INTENTS,
    AudioPlayerEvent,
    AudioPlayerSignal,
    IntentName,
    IntentRequest,
    LaunchRequest,
    PlaybackCommand,
    PlaybackControllerEvent,
    SessionEndedEvent,
    SkillRequest,
    SystemExceptionEvent,
)
from .models import DeviceAttributes
from .search import ItemResolver
from .state import StateManager

logger = logging.getLogger(__name__)

WELCOME = 'Welcome to Audiobookshelf, you can say "play audiobook" to start listening.'
HELP = 'Tell me to play a specific audiobook, or you can say "play audio" to start playing your last book! How can I help?'
FALLBACK = "Sorry, I don't know about that. Try telling me to play a certain book."
FALLBACK_REPROMPT = "What would you like to do? You can try telling me to play a certain book."
UNSUPPORTED = "Sorry, I can't support that yet."
NEED_TITLE = 'I did not understand the request. For example, try saying "Play audiobook title" or "Play audiobook title by author".'

class AudiobookSkill:
    """
    Routes one platform event to the session controller. Device attributes
    are loaded before dispatch and saved afterwards whatever the outcome.
    """

    def __init__(self, state_manager: StateManager, controller: SessionController, resolver: Optional[ItemResolver] = None):
        self.state_manager = state_manager
        self.controller = controller
        self.resolver = resolver or ItemResolver(controller.client)

    async def handle(self, request: SkillRequest) -> SkillResponse:
        event = request.request
        attrs = self.state_manager.load(request.device_id)
        try:
            attrs, response = await self._dispatch(attrs, request)
            return response
        except RemoteError as e:
            session = attrs.current_play_session
            logger.error(
                f"Remote error handling {event.type} for device {request.device_id} "
                f"(session {session.session_id if session else None}, "
                f"book {session.title if session else None!r}): {e.kind.value} {e}"
            )
            return respond(SERVER_APOLOGY)
        except Exception as e:
            logger.error(f"Error handling {event.type} for device {request.device_id}: {e}", exc_info=True)
            return respond(SOMETHING_WRONG)
        finally:
            self.state_manager.save(request.device_id, attrs)

    async def _dispatch(self, attrs: DeviceAttributes, request: SkillRequest) -> Outcome:
        event = request.request
        if isinstance(event, LaunchRequest):
            return attrs, respond(WELCOME, reprompt=WELCOME)
        if isinstance(event, IntentRequest):
            return await self._intent(attrs, request, event)
        if isinstance(event, AudioPlayerEvent):
            return await self._audio_player(attrs, event)
        if isinstance(event, PlaybackControllerEvent):
            return await self._playback_controller(attrs, request, event)
        if isinstance(event, SystemExceptionEvent):
            logger.error(f"System exception encountered: {event.error} (cause: {event.cause})")
            return attrs, respond()
        if isinstance(event, SessionEndedEvent):
            logger.info(f"Session ended: {event.reason}")
            if event.error:
                logger.error(f"Session ended with error: {event.error}")
            return await self.controller.end_session(attrs, request.audio_player)
        return attrs, respond()

    async def _intent(self, attrs: DeviceAttributes, request: SkillRequest, intent: IntentRequest) -> Outcome:
        name = intent.name
        player = request.audio_player
        logger.info(f"Intent {name.value} on device {request.device_id}")

        if name in (IntentName.PLAY, IntentName.RESUME, IntentName.PLAY_LAST):
            return await self.controller.play(attrs, request.device_id, intent.item_id, speak=True)
        if name == IntentName.PLAY_BOOK:
            return await self._play_book(attrs, request, intent)
        if name == IntentName.PAUSE:
            return await self.controller.pause(attrs, player, speak=True)
        if name == IntentName.NEXT:
            return await self.controller.next_chapter(attrs, player, speak=False)
        if name == IntentName.PREVIOUS:
            return await self.controller.previous_chapter(attrs, player, speak=True)
        if name in (IntentName.SEEK_FORWARD, IntentName.SEEK_BACK):
            if intent.duration is None:
                return attrs, respond(SOMETHING_WRONG)
            delta_s = intent.duration.total_seconds()
            if name == IntentName.SEEK_BACK:
                delta_s = -delta_s
            return await self.controller.seek(attrs, player, delta_s)
        if name in (IntentName.CANCEL, IntentName.STOP):
            return await self.controller.stop(attrs, player)
        if name == IntentName.HELP:
            return attrs, respond(HELP, reprompt=HELP)
        if name in UNSUPPORTED_INTENTS:
            return attrs, respond(UNSUPPORTED)
        return attrs, respond(FALLBACK, reprompt=FALLBACK_REPROMPT)

    async def _play_book(self, attrs: DeviceAttributes, request: SkillRequest, intent: IntentRequest) -> Outcome:
        if intent.item_id:
            return await self.controller.play(attrs, request.device_id, intent.item_id, speak=True)
        if not intent.title:
            return attrs, respond(NEED_TITLE, reprompt=NEED_TITLE)

        item_id = await self.resolver.resolve(intent.title, intent.author, intent.resolved_title, intent.resolved_author)
        if item_id is None:
            not_found = f"No book of title '{intent.title}' found. Please try again."
            return attrs, respond(not_found, reprompt=not_found)
        return await self.controller.play(attrs, request.device_id, item_id, speak=True)

    async def _audio_player(self, attrs: DeviceAttributes, event: AudioPlayerEvent) -> Outcome:
        logger.info(f"AudioPlayer event: {event.signal.value} (token {event.token}, offset {event.offset_ms}ms)")
        signal = event.signal
        if signal in (AudioPlayerSignal.STARTED, AudioPlayerSignal.STOPPED):
            return await self.controller.on_progress(attrs, event)
        if signal == AudioPlayerSignal.NEARLY_FINISHED:
            return await self.controller.on_nearly_finished(attrs, event)
        if signal == AudioPlayerSignal.FINISHED:
            return await self.controller.on_finished(attrs, event)
        if signal == AudioPlayerSignal.FAILED:
            return await self.controller.on_failed(attrs, event)
        return attrs, respond()

    async def _playback_controller(self, attrs: DeviceAttributes, request: SkillRequest, event: PlaybackControllerEvent) -> Outcome:
        # Hardware buttons: same operations as the intents, without speech
        player = request.audio_player
        command = event.command
        logger.info(f"PlaybackController command: {command.value}")
        if command == PlaybackCommand.PLAY:
            return await self.controller.play(attrs, request.device_id, speak=False)
        if command == PlaybackCommand.PAUSE:
            return await self.controller.pause(attrs, player, speak=False)
        if command == PlaybackCommand.PREVIOUS:
            return await self.controller.previous_chapter(attrs, player, speak=False)
        if command == PlaybackCommand.NEXT:
            return await self.controller.next_chapter(attrs, player, speak=False)
        return attrs, respond()
