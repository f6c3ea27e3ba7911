"""
Business code generation.

Two strategies:
1. Partitioned sequential codes, `<prefix><YYMMDD><NNN>`, for shipments
   and expense applications. The sequence comes from SequenceAllocator
   and the unique constraint on the code column is the final arbiter;
   a duplicate-key insert retries allocation and insert together.
2. Random 7-digit codes for customers and suppliers, drawn until one is
   not taken.
"""

import logging
import random
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

from freight_ledger.config.loader import CodeConfig, StoreConfig
from freight_ledger.storage.db import is_unique_violation
from freight_ledger.storage.models import Party, PartyKind, Shipment
from freight_ledger.storage.repository import (
    FinanceRepository,
    MasterDataRepository,
    ShipmentRepository,
)
from .errors import ConflictError, ContentionError, ResourceExhaustedError
from .retry import with_retry
from .sequence import SequenceAllocator

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_DAILY_SEQUENCE = 999
RANDOM_CODE_MIN = 1000000
RANDOM_CODE_MAX = 9999999

PARTITION_FORMAT = "%y%m%d"


def partition_key_for(moment: datetime) -> str:
    """Format the calendar day of `moment` as a partition key (YYMMDD)."""
    return moment.strftime(PARTITION_FORMAT)


def format_sequential_code(prefix: str, partition_key: str, seq: int) -> str:
    """Build `<prefix><partition><seq:03d>`.

    Raises:
        ResourceExhaustedError: If `seq` is past the daily limit of 999
    """
    if seq > MAX_DAILY_SEQUENCE:
        raise ResourceExhaustedError(
            f"Daily sequence limit reached for {prefix}{partition_key} "
            f"({MAX_DAILY_SEQUENCE} codes per day)"
        )
    return f"{prefix}{partition_key}{seq:03d}"


def sequence_suffix(code: Optional[str]) -> Optional[int]:
    """Extract the trailing 3-digit sequence of a code, if it has one."""
    if not code or len(code) < 3 or not code[-3:].isdigit():
        return None
    return int(code[-3:])


def _is_duplicate(error: Exception) -> bool:
    return isinstance(error, ConflictError) and not isinstance(error, ContentionError)


class CodeGenerator:
    """Mints shipment codes, application numbers and party codes.

    Args:
        stores: Database file of each store
        codes: Code formats and retry bounds
        clock: Source of the current time; partitions follow its calendar day
        rng: Random source for party codes
    """

    def __init__(
        self,
        stores: StoreConfig,
        codes: Optional[CodeConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        rng: Optional[random.Random] = None
    ):
        self.codes = codes or CodeConfig()
        self.clock = clock
        self.rng = rng or random.Random()
        self.master = MasterDataRepository(stores.main)
        self.shipments = ShipmentRepository(stores.shipment)
        self.finance = FinanceRepository(stores.finance)
        self.shipment_sequence = SequenceAllocator(
            stores.shipment, "shipment", backfill=self._latest_shipment_sequence
        )
        self.application_sequence = SequenceAllocator(
            stores.finance, "expense_application", backfill=self._latest_application_sequence
        )

    # Sequential codes

    def next_shipment_code(self) -> str:
        """Allocate the next shipment code for today, e.g. `Rsl-250101001`."""
        key = partition_key_for(self.clock())
        seq = self.shipment_sequence.allocate(key)
        return format_sequential_code(self.codes.shipment_prefix, key, seq)

    def next_application_number(self) -> str:
        """Allocate the next expense application number for today, e.g. `F250101001`."""
        key = partition_key_for(self.clock())
        seq = self.application_sequence.allocate(key)
        return format_sequential_code(self.codes.application_prefix, key, seq)

    def _latest_shipment_sequence(self, conn: sqlite3.Connection, partition_key: str) -> Optional[int]:
        prefix = f"{self.codes.shipment_prefix}{partition_key}"
        return sequence_suffix(self.shipments.latest_code_with_prefix(prefix, conn=conn))

    def _latest_application_sequence(self, conn: sqlite3.Connection, partition_key: str) -> Optional[int]:
        start = datetime.strptime(partition_key, PARTITION_FORMAT)
        latest = self.finance.latest_application_number_between(
            start, start + timedelta(days=1), conn=conn
        )
        return sequence_suffix(latest)

    def create_shipment(self, bl_number: Optional[str] = None) -> Shipment:
        """Create a shipment under a freshly allocated code.

        Raises:
            ContentionError: If every attempt collided on the code column
            ResourceExhaustedError: If today's sequence is used up
        """
        def attempt(_: int) -> Shipment:
            shipment = Shipment(
                id=str(uuid.uuid4()),
                code=self.next_shipment_code(),
                bl_number=bl_number,
                created_at=self.clock()
            )
            try:
                self.shipments.insert_shipment(shipment)
            except sqlite3.IntegrityError as e:
                if is_unique_violation(e, "shipment", "code"):
                    raise ConflictError(f"Shipment code {shipment.code} already exists") from e
                raise
            return shipment

        shipment = with_retry(
            attempt,
            _is_duplicate,
            attempts=self.codes.shipment_attempts,
            on_exhausted=lambda e: ContentionError(
                "Too much concurrent contention creating shipment, please retry"
            ),
            label="create shipment"
        )
        logger.info(f"[CODES] Created shipment {shipment.code}")
        return shipment

    def with_application_number(self, insert: Callable[[str], T]) -> T:
        """Run `insert` with a new application number, retrying on duplicates.

        `insert` must raise sqlite3.IntegrityError when the number is
        already taken; any other failure propagates without retry.

        Raises:
            ContentionError: If every attempt collided on the application number
        """
        def attempt(_: int) -> T:
            number = self.next_application_number()
            try:
                return insert(number)
            except sqlite3.IntegrityError as e:
                if is_unique_violation(e, "expense_application", "application_number"):
                    raise ConflictError(f"Application number {number} already exists") from e
                raise

        return with_retry(
            attempt,
            _is_duplicate,
            attempts=self.codes.application_attempts,
            on_exhausted=lambda e: ContentionError(
                "Too much concurrent contention creating expense application, please retry"
            ),
            label="create application"
        )

    # Random codes

    def random_party_code(self, kind: PartyKind) -> str:
        """Draw a 7-digit code not yet used by any party of `kind`.

        Retries without bound unless `random_code_max_attempts` is set.
        """
        def attempt(_: int) -> str:
            code = str(self.rng.randint(RANDOM_CODE_MIN, RANDOM_CODE_MAX))
            if self.master.find_unique(kind, code) is not None:
                raise ConflictError(f"{kind.value} code {code} already exists")
            return code

        return with_retry(
            attempt,
            _is_duplicate,
            attempts=self.codes.random_code_max_attempts,
            label=f"draw {kind.value} code"
        )

    def create_party(self, kind: PartyKind, name: str) -> Party:
        """Create a customer or supplier under a fresh random code."""
        if not name or not name.strip():
            raise ValueError("name is required and cannot be empty")

        def attempt(_: int) -> Party:
            party = Party(
                id=str(uuid.uuid4()),
                code=self.random_party_code(kind),
                name=name.strip(),
                kind=kind,
                created_at=self.clock()
            )
            try:
                self.master.insert_party(party)
            except sqlite3.IntegrityError as e:
                if is_unique_violation(e, kind.value, "code"):
                    raise ConflictError(f"{kind.value} code {party.code} already exists") from e
                raise
            return party

        party = with_retry(
            attempt,
            _is_duplicate,
            attempts=self.codes.random_code_max_attempts,
            label=f"create {kind.value}"
        )
        logger.info(f"[CODES] Created {kind.value} {party.code}")
        return party

    def create_customer(self, name: str) -> Party:
        return self.create_party(PartyKind.CUSTOMER, name)

    def create_supplier(self, name: str) -> Party:
        return self.create_party(PartyKind.SUPPLIER, name)
