"""Wiring: build every core component from a ``SalesbotConfig``.

Which variant runs (SQL or memory store, Discord or no notifier, which
gateway verifiers) is decided here by configuration, never by separate
code paths in the core.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from salesbot.authorization import AuthorizationRegistry
from salesbot.backup import BackupManager, DumpTool, PgDumpTool
from salesbot.dispatcher import ConfirmationDispatcher
from salesbot.errors import PersistenceError
from salesbot.gateways import GatewayVerifier, GenericVerifier, MercadoPagoVerifier, StripeVerifier
from salesbot.keys import KeyGenerator, KeyService
from salesbot.members import MemberLog
from salesbot.mercadopago_client import MercadoPagoClient
from salesbot.notifier import DiscordNotifier
from salesbot.payment_ledger import PaymentLedger
from salesbot.stores import MemoryStore, SQLStore

if TYPE_CHECKING:
    from salesbot.config import SalesbotConfig
    from salesbot.notifier import Notifier
    from salesbot.store import Store

logger = logging.getLogger(__name__)


class Salesbot:
    """Container owning the store, core components and their lifecycle."""

    def __init__(
        self,
        config: SalesbotConfig,
        store: Store,
        notifier: Notifier | None = None,
        dump_tool: DumpTool | None = None,
        verifiers: dict[str, GatewayVerifier] | None = None,
        closeables: list[Any] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.notifier = notifier
        self.ledger = PaymentLedger(store)
        self.registry = AuthorizationRegistry(store, config.owner_id)
        self.keys = KeyService(
            store,
            KeyGenerator(store, max_attempts=config.key_max_attempts),
            key_length=config.key_length,
            default_limit=config.keys_limit,
        )
        self.members = MemberLog(store)
        self.dispatcher = ConfirmationDispatcher(
            self.ledger,
            notifier,
            config.owner_id,
            key_service=self.keys,
            issue_keys=config.issue_key_on_confirm,
            key_duration=config.default_key_duration,
        )
        self.backups: BackupManager | None = None
        if dump_tool is not None:
            self.backups = BackupManager(
                dump_tool,
                config.backup_dir,
                product_name=config.product_name,
                max_backups=config.max_backups,
            )
        self.verifiers: dict[str, GatewayVerifier] = dict(verifiers or {})
        self._closeables = list(closeables or [])
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: SalesbotConfig, *, persistent: bool = True) -> Salesbot:
        """Production wiring; ``persistent=False`` gives the memory-only variant."""
        closeables: list[Any] = []
        store: Store
        if persistent:
            sql_store = SQLStore.from_url(config.sqlalchemy_url)
            closeables.append(sql_store)
            store = sql_store
        else:
            store = MemoryStore()

        notifier: Notifier | None = None
        if config.discord_token:
            discord = DiscordNotifier(config.discord_token)
            closeables.append(discord)
            notifier = discord

        dump_tool: DumpTool | None = None
        if persistent:
            dump_tool = PgDumpTool(
                host=config.db_host,
                port=config.db_port,
                user=config.db_user,
                database=config.db_name,
                password=config.db_password,
            )

        verifiers: dict[str, GatewayVerifier] = {}
        if config.webhook_secret:
            verifiers["payment"] = GenericVerifier(config.webhook_secret)
        if config.mercadopago_access_token:
            mp_client = MercadoPagoClient(config.mercadopago_access_token)
            closeables.append(mp_client)
            verifiers["mercadopago"] = MercadoPagoVerifier(mp_client)
        if config.stripe_webhook_secret:
            verifiers["stripe"] = StripeVerifier(config.stripe_webhook_secret)

        return cls(config, store, notifier, dump_tool, verifiers, closeables)

    async def start(self) -> None:
        """Prepare schema and caches, run sweeps, start the recurring tasks."""
        if isinstance(self.store, SQLStore):
            await self.store.create_schema()
        await self.registry.load()
        await self.run_sweeps()
        if self.config.sweep_interval_minutes:
            self.start_sweeps(self.config.sweep_interval_minutes * 60)
        if self.backups is not None and self.config.auto_backup_interval_hours:
            await self.backups.start_auto_backup(self.config.auto_backup_interval_hours)
        logger.info("Salesbot core started (owner %s).", self.config.owner_id)

    async def stop(self) -> None:
        """Stop the recurring tasks and release clients and connections."""
        await self.stop_sweeps()
        if self.backups is not None:
            await self.backups.stop_auto_backup()
        for resource in reversed(self._closeables):
            try:
                await resource.close()
            except Exception:
                logger.warning("Failed to close %s.", type(resource).__name__)
        self._closeables.clear()
        logger.info("Salesbot core stopped.")

    # -- expiry sweeps ------------------------------------------------------------

    async def run_sweeps(self) -> dict[str, int]:
        """Expire overdue keys and, when configured, stale pending payments."""
        keys = await self.keys.sweep_expired()
        payments: list[Any] = []
        if self.config.pending_expiry_hours:
            payments = await self.ledger.expire_stale(
                timedelta(hours=self.config.pending_expiry_hours)
            )
        return {"keys_expired": len(keys), "payments_expired": len(payments)}

    def start_sweeps(self, interval_secs: float) -> None:
        """Run ``run_sweeps`` every ``interval_secs``, replacing any prior schedule."""
        if interval_secs <= 0:
            raise ValueError(f"interval_secs must be positive, got {interval_secs}")
        if self._sweep_task is not None:
            self._sweep_task.cancel()
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval_secs))
        logger.info("Expiry sweep scheduled every %.0fs.", interval_secs)

    async def _sweep_loop(self, interval_secs: float) -> None:
        """Sweep until cancelled; a failed sweep never stops the loop."""
        try:
            while True:
                await asyncio.sleep(interval_secs)
                try:
                    await self.run_sweeps()
                except PersistenceError as e:
                    logger.error("Expiry sweep failed: %s", e)
                except Exception:
                    logger.exception("Unexpected error during expiry sweep.")
        except asyncio.CancelledError:
            pass

    async def stop_sweeps(self) -> bool:
        """Cancel the sweep schedule. Returns False if nothing was scheduled."""
        task = self._sweep_task
        if task is None:
            return False
        self._sweep_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return True

    @property
    def sweeps_active(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()
