"""
Main application class for Amadeus Companion.
Coordinates all components and manages the main application loop.
"""

import asyncio
import logging
import signal
import sys
import threading
from typing import Optional

from .config import Config
from .event_bus import EventBus
from ..ai.conversation import ChatOrchestrator
from ..ai.credentials import CredentialProvider, create_credential_provider
from ..ai.provider_base import ProviderKind
from ..ai.transport import HttpTransport
from ..models.character import Character, create_character
from ..models.memory import MemoryManager
from ..presentation.backlog import BackLog
from ..presentation.console import ConsoleSurface
from ..presentation.state_machine import ConversationTurnState, PresentationStateMachine

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  <text>      talk (when the input prompt is shown)
  <enter>     continue / skip the current text
  /auto       toggle auto mode
  /menu       open or close the menu (pauses the text)
  /log        show the back log
  /reset      clear the conversation
  /name NAME  set the name used for you
  /remember X add a fact about you to long-term memory
  /forget     erase long-term memory
  /quit       exit"""

class CompanionApplication:
    """Main application class that orchestrates all components."""

    def __init__(self, config: Config):
        self.config = config
        self.running = False
        self.event_bus = EventBus()

        # Core components
        self.character: Optional[Character] = None
        self.memory: Optional[MemoryManager] = None
        self.presentation: Optional[PresentationStateMachine] = None
        self.backlog: Optional[BackLog] = None
        self.surface: Optional[ConsoleSurface] = None
        self.credential_provider: Optional[CredentialProvider] = None
        self.orchestrator: Optional[ChatOrchestrator] = None

        self._input_task: Optional[asyncio.Task] = None
        self._overlay_open = False

        # Setup signal handlers
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info("Amadeus application initialized")

    async def initialize(self):
        """Initialize all application components."""
        logger.info("Initializing application components...")

        try:
            # Initialize event bus
            await self.event_bus.initialize()

            # Load character
            personality = self.config.personality
            self.character = create_character(
                name=personality.name,
                persona_prompt=personality.persona_prompt,
                personality_file=personality.personality_file,
            )

            # Long-term memory
            self.memory = MemoryManager(self.config.memory, data_dir=self.config.data_dir)

            # Presentation
            self.presentation = PresentationStateMachine(
                self.config.presentation,
                event_bus=self.event_bus,
                speaker=self.character.name,
            )
            self.backlog = BackLog(self.config.presentation.backlog_size)
            self.backlog.attach(self.event_bus)
            self.surface = ConsoleSurface(self.character.name)

            # Vertex AI needs bearer tokens
            if ProviderKind.from_index(self.config.ai.provider_index) == ProviderKind.VERTEX:
                self.credential_provider = create_credential_provider(self.config.ai)

            # Initialize chat orchestrator
            self.orchestrator = ChatOrchestrator(
                config=self.config.ai,
                character=self.character,
                event_bus=self.event_bus,
                presentation=self.presentation,
                transport=HttpTransport(timeout=self.config.ai.request_timeout),
                memory=self.memory,
                credential_provider=self.credential_provider,
            )

            # Setup event handlers
            self._setup_event_handlers()

            logger.info(f"Provider: {self.config.ai.provider_name}")
            logger.info("All components initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize application: {e}", exc_info=True)
            raise

    def _setup_event_handlers(self):
        """Setup event handlers for inter-component communication."""

        # Presentation -> console
        self.event_bus.subscribe("presentation_updated", self.surface.on_frame)
        self.event_bus.subscribe("state_changed", self._handle_state_changed)

        # Conversation events
        self.event_bus.subscribe("turn_failed", self._handle_turn_failed)

        logger.info("Event handlers configured")

    def _handle_state_changed(self, old_state: ConversationTurnState, new_state: ConversationTurnState):
        if new_state == ConversationTurnState.INPUT_READY:
            print("> ", end="", flush=True)

    def _handle_turn_failed(self, error):
        logger.debug(f"Turn failed: {error!r}")

    async def handle_input(self, line: str):
        """Dispatch one line typed by the user."""
        text = line.strip()

        if text.startswith("/"):
            command, _, argument = text.partition(" ")
            command = command.lower()
            argument = argument.strip()
            if command == "/quit":
                self.running = False
            elif command == "/auto":
                enabled = self.presentation.toggle_auto_mode()
                print(f"Auto mode: {'ON' if enabled else 'OFF'}")
            elif command == "/menu":
                self._overlay_open = not self._overlay_open
                self.presentation.set_overlay_open(self._overlay_open)
                print("Menu open (text paused)" if self._overlay_open else "Menu closed")
            elif command == "/log":
                print(self.backlog.format() or "(back log is empty)")
            elif command == "/reset":
                if self.orchestrator.reset_conversation():
                    print("Conversation cleared.")
            elif command in ("/name", "/remember", "/forget"):
                self._handle_memory_command(command, argument)
            elif command == "/help":
                print(HELP_TEXT)
            else:
                print(f"Unknown command: {text}")
            return

        if self.presentation.state == ConversationTurnState.INPUT_READY:
            if text:
                self.orchestrator.submit(text)
        else:
            # Enter advances the dialogue
            self.presentation.advance()

    def _handle_memory_command(self, command: str, argument: str):
        """Edit long-term memory between turns."""
        if self.orchestrator.busy:
            print("Wait until the current reply is finished.")
            return

        if command == "/forget":
            self.memory.clear_all()
            print("Long-term memory erased.")
        elif not argument:
            print(f"Usage: {command} <text>")
            return
        elif command == "/name":
            self.memory.set_user_name(argument)
            print(f"{self.character.name} will call you {argument}.")
        else:
            self.memory.add_user_fact(argument)
            print("Noted.")

        self.orchestrator.refresh_system_prompt()

    def _stdin_reader(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
        """Blocking reader; runs on a daemon thread so it never holds up exit."""
        try:
            for line in iter(sys.stdin.readline, ""):
                loop.call_soon_threadsafe(queue.put_nowait, line)
            loop.call_soon_threadsafe(queue.put_nowait, None)
        except RuntimeError:
            # Loop already closed
            return

    async def _read_input(self):
        queue: asyncio.Queue = asyncio.Queue()
        reader = threading.Thread(target=self._stdin_reader,
                                  args=(asyncio.get_running_loop(), queue), daemon=True)
        reader.start()

        while self.running:
            line = await queue.get()
            if line is None:
                self.running = False
                break
            await self.handle_input(line)

    async def run(self):
        """Main application run loop."""
        try:
            # Initialize all components
            await self.initialize()

            self.running = True
            logger.info("Starting main application loop")
            print(HELP_TEXT)
            print("> ", end="", flush=True)

            self._input_task = asyncio.create_task(self._read_input())

            tick_interval = 1 / max(self.config.presentation.tick_rate, 1)
            loop = asyncio.get_running_loop()
            last = loop.time()

            # Main event loop
            while self.running:
                try:
                    now = loop.time()
                    self.presentation.tick(now - last)
                    last = now

                    await asyncio.sleep(tick_interval)

                except Exception as e:
                    logger.error(f"Error in main loop: {e}", exc_info=True)
                    # Continue running unless it's a critical error
                    if not self.running:
                        break

        except Exception as e:
            logger.error(f"Application error: {e}", exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Shutdown the application gracefully."""
        logger.info("Shutting down application...")
        self.running = False

        if self._input_task:
            self._input_task.cancel()

        # Shutdown components in reverse order
        components = [
            self.orchestrator,
            self.event_bus
        ]

        for component in components:
            if component:
                try:
                    await component.shutdown()
                except Exception as e:
                    logger.error(f"Error shutting down component: {e}")

        logger.info("Application shutdown complete")

    def _signal_handler(self, signum, frame):
        """Handle system signals for graceful shutdown."""
        logger.info(f"Received signal {signum}")
        self.running = False
