from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .auth import Accounts
from .db import InMemoryDatabase, Settings, settings as default_settings
from .events import EventStore
from .gateway import BroadcastGateway
from .ledger import AnswerLedger
from .notifications import TelegramNotifier
from .quizzes import QuizRepository
from .ranking import RankingEngine
from .registry import SessionRegistry
from .scheduler import Scheduler
from .sequencer import QuizSequencer


@dataclass
class Hub:
    """Every live-session component of one app, wired to one store.

    Nothing here is a module global, so two hubs never share quiz state.
    """

    settings: Settings
    db: InMemoryDatabase
    events: EventStore
    accounts: Accounts
    quizzes: QuizRepository
    ledger: AnswerLedger
    ranking: RankingEngine
    registry: SessionRegistry
    sequencer: QuizSequencer
    gateway: BroadcastGateway
    notifier: TelegramNotifier

    @classmethod
    def create(
        cls,
        settings: Settings = default_settings,
        db: Optional[InMemoryDatabase] = None,
        notifier: Optional[TelegramNotifier] = None,
    ) -> "Hub":
        db = db or InMemoryDatabase()
        events = EventStore(db)
        accounts = Accounts(db, settings)
        quizzes = QuizRepository(db, settings)
        ledger = AnswerLedger(quizzes)
        ranking = RankingEngine(quizzes)
        registry = SessionRegistry(events)
        notifier = notifier or TelegramNotifier(settings)
        sequencer = QuizSequencer(
            quizzes,
            ledger,
            ranking,
            registry,
            scheduler=Scheduler(settings.TIME_SCALE),
            accounts=accounts,
            notifier=notifier,
            settings=settings,
        )
        gateway = BroadcastGateway(quizzes, ledger, ranking, sequencer, registry)
        return cls(
            settings=settings,
            db=db,
            events=events,
            accounts=accounts,
            quizzes=quizzes,
            ledger=ledger,
            ranking=ranking,
            registry=registry,
            sequencer=sequencer,
            gateway=gateway,
            notifier=notifier,
        )

    async def close(self) -> None:
        await self.sequencer.shutdown()
        await self.notifier.aclose()
