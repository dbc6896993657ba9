"""
Runtime Application - wires the timeout engine, messaging, dead-letter
handling, statistics and broadcast into one process.

ARCHITECTURE:
- Detection sweep on the scheduler; every committed transition is published
  to the timeout exchange
- Exchange fans out to the notification queue and the statistics queue
- Chat, payment-timeout and wallet queues consumed through injected
  collaborators (logging defaults)
- Exhausted messages land on dead-letter topics, consumed by the
  dead-letter service (record + alert)
- Periodic retry-bookkeeping cleanup and statistics period rollover
- Graceful shutdown on SIGINT / SIGTERM
"""

from __future__ import annotations

import signal
import threading
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional, Dict, Any

from campus.broadcast import BroadcastService, WebSocketBroadcastServer
from campus.config import ConfigSchema, ConfigLoader, load_config
from campus.deadletter import (
    DeadLetterService,
    DeadLetterLog,
    AlertTransport,
    LoggingAlertTransport,
    WebhookAlertTransport,
)
from campus.logging import LogStream, get_logger, setup_logging
from campus.messaging import (
    InMemoryBroker,
    BrokerTransport,
    ReliableMessageChannel,
    RetryPolicy,
    RetryTracker,
    MessageProducer,
    IdempotentHandler,
    TimeoutNotificationConsumer,
    NotificationConsumer,
    ChatConsumer,
    PaymentTimeoutConsumer,
    PaymentOrders,
    UserMessenger,
    LoggingUserMessenger,
    WalletConsumer,
    WalletAuditConsumer,
    WalletLedger,
    WalletAuditSink,
    LoggingWalletLedger,
    LoggingWalletAuditSink,
    topics,
)
from campus.runtime.circuit_breaker import TaskFailureBreaker
from campus.runtime.scheduler import TaskScheduler
from campus.statistics import StatisticsAggregator, TimeoutStatisticsListener
from campus.time import Clock, RealTimeClock
from campus.timeout import (
    TimeoutDetectionEngine,
    InterventionService,
    InMemoryOrderStore,
    SQLiteOrderStore,
    OrderStore,
    PolicyTable,
    Timeoutable,
)

logger = get_logger(LogStream.SYSTEM)

TASK_SWEEP = "timeout_sweep"
TASK_RETRY_CLEANUP = "retry_bookkeeping_cleanup"
TASK_PERIOD_ROLLOVER = "statistics_period_rollover"
TASK_DEAD_LETTER_RECONCILE = "dead_letter_reconcile"


class LoggingArchiver:
    """Archiver that only records the hand-over; the order domain owns real archival."""

    def __init__(self):
        self.logger = get_logger(LogStream.TIMEOUT)

    def archive_and_remove(self, order: Timeoutable) -> None:
        self.logger.warning(
            f"Order {order.order_number} handed to platform intervention",
            extra={"order_number": order.order_number, "timeout_count": order.timeout_count},
        )


@dataclass
class RunOptions:
    config_dir: Path = Path("config")
    run_once: bool = False


class CampusApp:
    """
    Composition root.

    Every collaborator can be injected (tests pass fakes); anything left out
    is built from config.
    """

    def __init__(
        self,
        config: ConfigSchema,
        *,
        clock: Optional[Clock] = None,
        order_store: Optional[OrderStore] = None,
        broker: Optional[BrokerTransport] = None,
        messenger: Optional[UserMessenger] = None,
        alert_transport: Optional[AlertTransport] = None,
        archiver=None,
        dead_letter_store=None,
        reconcile_handler=None,
        wallet_ledger: Optional[WalletLedger] = None,
        wallet_audit_sink: Optional[WalletAuditSink] = None,
        payments: Optional[PaymentOrders] = None,
    ):
        self.config = config
        self.clock = clock or RealTimeClock()

        # -- timeout engine ------------------------------------------------
        if order_store is None:
            if config.order_db_path is not None:
                order_store = SQLiteOrderStore(config.order_db_path)
            else:
                order_store = InMemoryOrderStore()
        self.order_store = order_store
        self.archiver = archiver or LoggingArchiver()
        policies = PolicyTable.from_config(config.timeout)
        self.engine = TimeoutDetectionEngine(
            store=order_store,
            policies=policies,
            archiver=self.archiver,
            clock=self.clock,
            max_cas_retries=config.timeout.max_cas_retries,
        )
        self.interventions = InterventionService(
            order_store, policies=policies, archiver=self.archiver, clock=self.clock,
            max_cas_retries=config.timeout.max_cas_retries,
        )

        # -- messaging -----------------------------------------------------
        msg_cfg = config.messaging
        self.retry_tracker = RetryTracker(
            max_entries=msg_cfg.retry_tracker_max_entries,
            ttl=timedelta(seconds=msg_cfg.retry_tracker_ttl_seconds),
            clock=self.clock,
        )
        self.broker = broker or InMemoryBroker(clock=self.clock)
        self.channel = ReliableMessageChannel(
            self.broker,
            retry_policy=RetryPolicy.from_config(msg_cfg),
            clock=self.clock,
            retry_tracker=self.retry_tracker,
            fetch_timeout=msg_cfg.fetch_timeout_seconds,
        )
        self.producer = MessageProducer(self.channel)

        # -- dead letters --------------------------------------------------
        dl_cfg = config.deadletter
        if alert_transport is None:
            if dl_cfg.alert_webhook_url:
                alert_transport = WebhookAlertTransport(
                    dl_cfg.alert_webhook_url,
                    timeout=dl_cfg.alert_timeout_seconds,
                    max_attempts=dl_cfg.alert_max_attempts,
                )
            else:
                alert_transport = LoggingAlertTransport()
        self.alert_transport = alert_transport
        if dead_letter_store is None:
            dead_letter_store = DeadLetterLog(dl_cfg.log_path)
        self.dead_letters = DeadLetterService(
            store=dead_letter_store,
            alert_transport=alert_transport,
            retry_tracker=self.retry_tracker,
            clock=self.clock,
        )
        self.reconcile_handler = reconcile_handler

        # -- statistics / broadcast ----------------------------------------
        self.aggregator = StatisticsAggregator(clock=self.clock, timezone=config.statistics.timezone)
        self.broadcast = BroadcastService(clock=self.clock)
        self.statistics_listener = TimeoutStatisticsListener(self.aggregator, self.broadcast)
        self.broadcast_server: Optional[WebSocketBroadcastServer] = None
        if config.broadcast.enabled:
            self.broadcast_server = WebSocketBroadcastServer(
                self.broadcast, host=config.broadcast.host, port=config.broadcast.port,
            )

        # -- wiring --------------------------------------------------------
        self.messenger = messenger or LoggingUserMessenger()
        self.wallet_ledger = wallet_ledger or LoggingWalletLedger()
        self.wallet_audit_sink = wallet_audit_sink or LoggingWalletAuditSink()
        self.payments = payments
        self._wire_channel()
        self.engine.add_listener(self.producer.publish_timeout_event)
        self.interventions.add_listener(self.producer.publish_timeout_event)

        self.scheduler = TaskScheduler(
            max_workers=config.scheduler.max_workers,
            breaker=TaskFailureBreaker(config.scheduler.max_consecutive_failures),
            on_trip=self._on_task_trip,
            misfire_grace_seconds=config.scheduler.misfire_grace_seconds,
        )
        self._schedule_tasks()

    def _wire_channel(self) -> None:
        self.channel.bind(topics.TIMEOUT_EVENTS, topics.TIMEOUT_NOTIFY)
        self.channel.bind(topics.TIMEOUT_EVENTS, topics.TIMEOUT_STATISTICS)
        self.channel.subscribe(
            topics.TIMEOUT_NOTIFY,
            IdempotentHandler(TimeoutNotificationConsumer(self.messenger)),
            name="timeout-notifications",
        )
        self.channel.subscribe(
            topics.TIMEOUT_STATISTICS,
            IdempotentHandler(self.statistics_listener),
            name="timeout-statistics",
        )
        self.channel.subscribe(
            topics.NOTIFICATION,
            IdempotentHandler(NotificationConsumer(self.messenger)),
            name="notifications",
        )
        self.channel.subscribe(topics.CHAT, ChatConsumer(self.messenger), name="chat")
        self.channel.subscribe(
            topics.PAYMENT_TIMEOUT,
            IdempotentHandler(PaymentTimeoutConsumer(self.messenger, self.payments)),
            name="payment-timeouts",
        )
        wallet = WalletConsumer(self.wallet_ledger)
        for topic in (topics.WALLET_INIT, topics.WALLET_BALANCE, topics.WALLET_TRANSFER, topics.WALLET_WITHDRAW):
            self.channel.subscribe(topic, IdempotentHandler(wallet), name=topic)
        self.channel.subscribe(
            topics.WALLET_AUDIT,
            IdempotentHandler(WalletAuditConsumer(self.wallet_audit_sink)),
            name="wallet-audit",
        )
        self.channel.set_dead_letter_handler(self.dead_letters.on_dead_letter)

    def _schedule_tasks(self) -> None:
        sched_cfg = self.config.scheduler
        self.scheduler.add_task(TASK_SWEEP, self.sweep_once, sched_cfg.sweep_interval_seconds)
        self.scheduler.add_task(
            TASK_RETRY_CLEANUP,
            self.dead_letters.cleanup_retry_bookkeeping,
            sched_cfg.retry_cleanup_interval_seconds,
            initial_delay=sched_cfg.retry_cleanup_interval_seconds,
        )
        self.scheduler.add_task(
            TASK_PERIOD_ROLLOVER,
            self.roll_statistics_period,
            sched_cfg.period_rollover_interval_seconds,
            initial_delay=sched_cfg.period_rollover_interval_seconds,
        )
        if sched_cfg.dead_letter_reconcile_interval_seconds and self.reconcile_handler is not None:
            self.scheduler.add_task(
                TASK_DEAD_LETTER_RECONCILE,
                lambda: self.dead_letters.reconcile(self.reconcile_handler),
                sched_cfg.dead_letter_reconcile_interval_seconds,
                initial_delay=sched_cfg.dead_letter_reconcile_interval_seconds,
            )

    # ------------------------
    # Periodic work
    # ------------------------

    def sweep_once(self):
        return self.engine.sweep()

    def roll_statistics_period(self) -> bool:
        """Start a new statistics day and rebuild it from source orders when the day changed."""
        rolled = self.aggregator.roll_period()
        if rolled and hasattr(self.order_store, "all"):
            self.aggregator.rebuild(self.order_store.all())
        return rolled

    def _on_task_trip(self, task_name: str, failures: int, error: Exception) -> None:
        self.alert_transport.send_alert(
            f"Scheduled task {task_name} failed {failures} times in a row\n"
            f"last_error: {type(error).__name__}: {error}"
        )

    # ------------------------
    # Lifecycle
    # ------------------------

    def start(self) -> None:
        self.channel.start()
        if self.broadcast_server is not None:
            self.broadcast_server.start()
        self.scheduler.start()
        logger.info("CampusApp started")

    def stop(self) -> None:
        self.scheduler.stop()
        if self.channel.is_running:
            self.channel.stop()
        if self.broadcast_server is not None:
            self.broadcast_server.stop()
        close = getattr(self.dead_letters.store, "close", None)
        if close is not None:
            close()
        logger.info("CampusApp stopped", extra=self.get_stats())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "engine": self.engine.get_stats(),
            "channel": self.channel.get_stats(),
            "dead_letters": self.dead_letters.get_stats(),
            "broadcast": self.broadcast.get_stats(),
            "scheduler": self.scheduler.get_stats(),
        }


def run(opts: RunOptions) -> int:
    config = load_config(opts.config_dir)
    config.ensure_directories_exist()
    setup_logging(
        log_dir=config.logging.log_dir,
        log_level=config.logging.log_level.value,
        console_level=config.logging.console_level.value,
        json_logs=config.logging.json_logs,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
    )
    logger.info(
        "Configuration loaded",
        extra={"config": ConfigLoader.scrub_secrets(config.model_dump(mode="json"))},
    )

    app = CampusApp(config)

    if opts.run_once:
        events = app.sweep_once()
        app.channel.drain()
        logger.info(f"Single sweep complete: {len(events)} transitions", extra=app.get_stats())
        app.stop()
        return 0

    stop_event = threading.Event()

    def _stop(_sig, _frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    app.start()
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        app.stop()
    return 0


def run_app(opts: RunOptions) -> int:
    """
    Public entrypoint. Returns an int exit code.
    0 = clean shutdown
    1 = startup or runtime failure
    """
    try:
        return run(opts)
    except Exception as e:
        logger.exception("Fatal error in run_app: %s", e)
        return 1
