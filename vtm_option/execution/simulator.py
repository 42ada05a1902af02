import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from vtm_option.models.trading_models import ContractResult, Direction
from vtm_option.providers.broker_rest import BrokerError, BrokerGateway
from vtm_option.utils.time_utils import utcnow

logger = logging.getLogger("paper_broker")


@dataclass
class SimContract:
    contract_id: str
    asset: str
    direction: Direction
    stake: float
    opened_at: datetime
    won: bool
    payout: float = 0.0


class PaperBroker(BrokerGateway):
    """In-process gateway for paper trading.

    The outcome is drawn at placement and revealed once settle_after seconds have passed.
    """

    def __init__(self, settle_after: float = 60.0, payout_rate: float = 0.95,
                 win_probability: float = 0.5, seed: Optional[int] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.settle_after = settle_after
        self.payout_rate = payout_rate
        self.win_probability = win_probability
        self.contracts: Dict[str, SimContract] = {}
        self._rng = random.Random(seed)
        self._clock = clock

    async def place_order(self, stake: float, direction: Direction, asset: str) -> str:
        if stake <= 0:
            raise BrokerError(f"Invalid stake {stake}")
        contract_id = uuid.uuid4().hex[:16]
        won = self._rng.random() < self.win_probability
        self.contracts[contract_id] = SimContract(
            contract_id=contract_id,
            asset=asset,
            direction=Direction(direction),
            stake=stake,
            opened_at=self._clock(),
            won=won,
            # Payout includes the returned stake
            payout=round(stake * (1 + self.payout_rate), 2) if won else 0.0,
        )
        logger.info("Paper order placed id=%s asset=%s direction=%s stake=%.2f", contract_id, asset, direction, stake)
        return contract_id

    async def get_contract_status(self, contract_id: str) -> ContractResult:
        contract = self.contracts.get(contract_id)
        if contract is None:
            raise BrokerError(f"Unknown contract {contract_id}")
        if self._clock() - contract.opened_at < timedelta(seconds=self.settle_after):
            return ContractResult(status="pending")
        return ContractResult(status="won" if contract.won else "lost", payout=contract.payout)
