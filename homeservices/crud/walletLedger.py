import logging
from typing import Callable

from beanie import PydanticObjectId

from homeservices.commonUtils.exceptions import NotFound, ConcurrentModification
from homeservices.crud import ledgerPrimitives
from homeservices.repositories.userRepository import UserRepository
from homeservices.schemas.walletSchema import Wallet

logger = logging.getLogger(__name__)

MAX_WALLET_ATTEMPTS = 8
# Oldest references are dropped past this size; the booking ledger record still prevents replays.
APPLIED_REFS_LIMIT = 500


class WalletLedger:
    """
    Persists the ledger primitives against a provider wallet.

    Every movement is keyed by a reference (``complete:<booking>``,
    ``confirm:<booking>``, a withdrawal payment code). A reference already in
    the wallet's ``applied_refs`` is a no-op, and the write is a
    replace-if-version, so each movement lands exactly once.
    """

    def __init__(self, users: UserRepository, attempts: int = MAX_WALLET_ATTEMPTS):
        self.users = users
        self.attempts = attempts

    async def add_pending_earnings(self, provider_id: PydanticObjectId, amount: float, ref: str) -> Wallet:
        return await self._apply(provider_id, ref, lambda wallet: ledgerPrimitives.add_pending_earnings(wallet, amount))

    async def confirm_earnings(self, provider_id: PydanticObjectId, amount: float, ref: str) -> Wallet:
        return await self._apply(provider_id, ref, lambda wallet: ledgerPrimitives.confirm_earnings(wallet, amount))

    async def settle_disputed_earnings(self, provider_id: PydanticObjectId, held: float, payout: float,
                                       ref: str) -> Wallet:
        return await self._apply(provider_id, ref,
                                 lambda wallet: ledgerPrimitives.settle_disputed_earnings(wallet, held, payout))

    async def settle_withdrawal(self, provider_id: PydanticObjectId, amount: float, fee: float, ref: str) -> Wallet:
        return await self._apply(provider_id, ref,
                                 lambda wallet: ledgerPrimitives.settle_withdrawal(wallet, amount, fee))

    async def get_wallet(self, provider_id: PydanticObjectId) -> Wallet:
        wallet = await self.users.get_wallet(provider_id)
        if wallet is None:
            raise NotFound("Provider wallet not found")
        return wallet

    async def _apply(self, provider_id: PydanticObjectId, ref: str, movement: Callable[[Wallet], Wallet]) -> Wallet:
        for attempt in range(1, self.attempts + 1):
            wallet = await self.get_wallet(provider_id)
            if ref in wallet.applied_refs:
                logger.info(f"Ledger movement {ref} already applied to provider {provider_id}, skipping")
                return wallet

            updated = movement(wallet).model_copy(update={
                "version": wallet.version + 1,
                "applied_refs": [*wallet.applied_refs, ref][-APPLIED_REFS_LIMIT:],
            })
            if await self.users.save_wallet_if_version(provider_id, updated, wallet.version):
                logger.info(
                    f"Ledger movement {ref} applied to provider {provider_id}: "
                    f"balance {wallet.balance} -> {updated.balance}, "
                    f"pending {wallet.pending_balance} -> {updated.pending_balance}"
                )
                return updated

            logger.debug(f"Wallet of provider {provider_id} changed concurrently (attempt {attempt}), retrying")

        raise ConcurrentModification(f"Wallet of provider {provider_id} is busy, please retry")
