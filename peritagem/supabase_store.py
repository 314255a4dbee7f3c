"""
Supabase Inspection Store

InspectionStore over the hosted Postgres REST API (PostgREST, as exposed by
Supabase). One httpx.AsyncClient per call.

Tables:
    peritagens            inspection records
    peritagem_historico   audit trail (peritagem_id, status_antigo,
                          status_novo, alterado_por, created_at)
    profiles              users (id, nome, role, status, empresa_id)
    aguardando_peritagem  intake queue (os_interna, cliente, data_chegada,
                          status, created_at)

Transport failures and non-2xx responses raise PersistenceError. Writes ask
for `Prefer: return=representation`, so an empty response body on an
update or delete means the row did not exist.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .inspection_model import (
    Actor,
    HistoryEntry,
    InspectionRecord,
    INTAKE_WAITING,
    IntakeItem,
    PersistenceError,
    RecordNotFoundError,
)
from .inspection_store import InspectionStore, RecordFilter, _check_fields, apply_filter

logger = logging.getLogger("supabase_store")

RECORDS_TABLE = "peritagens"
HISTORY_TABLE = "peritagem_historico"
PROFILES_TABLE = "profiles"
INTAKE_TABLE = "aguardando_peritagem"

# Record attribute -> peritagens column
RECORD_COLUMNS: Dict[str, str] = {
    "record_id": "id",
    "raw_status": "status",
    "created_at": "created_at",
    "updated_at": "updated_at",
    "inspection_number": "numero_peritagem",
    "client_name": "cliente",
    "company_id": "empresa_id",
    "purchase_order": "numero_pedido",
}
CREATED_BY_COLUMN = "criado_por"
NOTE_COLUMN = "observacao"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a PostgREST timestamp ("...Z", "+00:00", short fractions)."""
    if value is None or value == "":
        return None
    text = str(value).strip().replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Normalize the fractional part to 6 digits for older fromisoformat()
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits, rest = digits + rest[0], rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        return datetime.fromisoformat(text)
    except ValueError as e:
        raise PersistenceError(f"Unreadable timestamp from store: {value!r}") from e


def profile_to_actor(row: Dict[str, Any]) -> Actor:
    return Actor.from_dict({
        "actor_id": row.get("id"),
        "display_name": row.get("nome") or "",
        "role": row.get("role"),
        "company_id": row.get("empresa_id"),
    })


class SupabaseInspectionStore(InspectionStore):
    """Storage collaborator backed by Supabase/PostgREST."""

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = f"{url.rstrip('/')}/rest/v1"
        self._timeout = timeout
        self._transport = transport
        self.headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
        returning: bool = False,
    ) -> List[Dict[str, Any]]:
        """Send one PostgREST request and return the rows of the response."""
        headers = dict(self.headers)
        if returning:
            headers["Prefer"] = "return=representation"

        url = f"{self._base_url}/{table}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.request(method, url, params=params, json=body, headers=headers)
                response.raise_for_status()
            except httpx.TimeoutException as e:
                logger.error(f"Timeout on {method} {table}: {e}")
                raise PersistenceError(f"Store timeout on {table}") from e
            except httpx.HTTPStatusError as e:
                logger.error(f"Store returned {e.response.status_code} on {method} {table}: {e.response.text}")
                raise PersistenceError(f"Store returned {e.response.status_code} on {table}") from e
            except httpx.HTTPError as e:
                logger.error(f"Store request failed on {method} {table}: {e}")
                raise PersistenceError(f"Store unreachable: {e}") from e

        if not response.content:
            return []
        try:
            data = response.json()
        except ValueError as e:
            raise PersistenceError(f"Store returned invalid JSON on {table}") from e
        if isinstance(data, dict):
            return [data]
        return list(data)

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    def _row_to_record(self, row: Dict[str, Any], actors: Dict[str, Actor]) -> InspectionRecord:
        known = set(RECORD_COLUMNS.values()) | {CREATED_BY_COLUMN}
        creator_id = row.get(CREATED_BY_COLUMN)
        creator = None
        if creator_id:
            creator = actors.get(str(creator_id)) or Actor(actor_id=str(creator_id), display_name="")
        created_at = parse_timestamp(row.get("created_at"))
        if created_at is None:
            raise PersistenceError(f"Inspection {row.get('id')} has no creation timestamp")
        return InspectionRecord(
            record_id=str(row["id"]),
            raw_status=row.get("status") or "",
            created_at=created_at,
            created_by=creator,
            updated_at=parse_timestamp(row.get("updated_at")),
            inspection_number=str(row.get("numero_peritagem") or ""),
            client_name=row.get("cliente") or "",
            company_id=row.get("empresa_id"),
            purchase_order=row.get("numero_pedido"),
            details={k: v for k, v in row.items() if k not in known},
        )

    @staticmethod
    def _record_to_row(record: InspectionRecord) -> Dict[str, Any]:
        row = dict(record.details)
        row.update({
            "id": record.record_id,
            "status": record.raw_status,
            "created_at": record.created_at.isoformat(),
            "updated_at": record.updated_at.isoformat() if record.updated_at else None,
            "numero_peritagem": record.inspection_number,
            "cliente": record.client_name,
            "empresa_id": record.company_id,
            "numero_pedido": record.purchase_order,
            CREATED_BY_COLUMN: record.created_by.actor_id if record.created_by else None,
        })
        return row

    @staticmethod
    def _row_to_entry(row: Dict[str, Any], actors: Dict[str, Actor]) -> HistoryEntry:
        actor_id = row.get("alterado_por")
        occurred_at = parse_timestamp(row.get("created_at"))
        if occurred_at is None:
            raise PersistenceError(f"History entry {row.get('id')} has no timestamp")
        return HistoryEntry(
            entry_id=str(row["id"]),
            record_id=str(row["peritagem_id"]),
            previous_raw_status=row.get("status_antigo"),
            new_raw_status=row.get("status_novo") or "",
            occurred_at=occurred_at,
            actor_id=str(actor_id) if actor_id else None,
            actor=actors.get(str(actor_id)) if actor_id else None,
            note=row.get(NOTE_COLUMN),
        )

    @staticmethod
    def _row_to_intake(row: Dict[str, Any]) -> IntakeItem:
        created_at = parse_timestamp(row.get("created_at"))
        if created_at is None:
            raise PersistenceError(f"Intake item {row.get('id')} has no timestamp")
        return IntakeItem.from_dict({
            "item_id": row["id"],
            "internal_order": row.get("os_interna"),
            "client_name": row.get("cliente"),
            "arrival_date": row.get("data_chegada"),
            "created_at": created_at.isoformat(),
            "status": row.get("status"),
        })

    async def _resolve_actors(self, user_ids: Iterable[Optional[str]]) -> Dict[str, Actor]:
        """Look up several profiles in one request."""
        ids = sorted({str(u) for u in user_ids if u})
        if not ids:
            return {}
        rows = await self._request(
            "GET",
            PROFILES_TABLE,
            params={"select": "id,nome,role,empresa_id", "id": f"in.({','.join(ids)})"},
        )
        return {str(row["id"]): profile_to_actor(row) for row in rows}

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def read_record(self, record_id: str) -> InspectionRecord:
        rows = await self._request(
            "GET", RECORDS_TABLE, params={"select": "*", "id": f"eq.{record_id}"}
        )
        if not rows:
            raise RecordNotFoundError(f"Inspection {record_id} not found")
        actors = await self._resolve_actors([rows[0].get(CREATED_BY_COLUMN)])
        return self._row_to_record(rows[0], actors)

    async def list_records(self, record_filter: Optional[RecordFilter] = None) -> List[InspectionRecord]:
        record_filter = record_filter or RecordFilter()
        params = {"select": "*", "order": "created_at.desc"}
        if record_filter.company_id is not None:
            params["empresa_id"] = f"eq.{record_filter.company_id}"
        if record_filter.created_by is not None:
            params[CREATED_BY_COLUMN] = f"eq.{record_filter.created_by}"

        rows = await self._request("GET", RECORDS_TABLE, params=params)
        actors = await self._resolve_actors(row.get(CREATED_BY_COLUMN) for row in rows)
        # Stage and search filtering stay client-side: legacy phrasings
        # cannot be matched with PostgREST equality filters.
        return apply_filter([self._row_to_record(row, actors) for row in rows], record_filter)

    async def insert_record(self, record: InspectionRecord) -> InspectionRecord:
        rows = await self._request("POST", RECORDS_TABLE, body=self._record_to_row(record), returning=True)
        if not rows:
            raise PersistenceError(f"Store did not confirm insert of inspection {record.record_id}")
        actors = {record.created_by.actor_id: record.created_by} if record.created_by else {}
        return self._row_to_record(rows[0], actors)

    async def update_record_status(
        self,
        record_id: str,
        new_raw_status: str,
        updated_at: datetime,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> InspectionRecord:
        body = {"status": new_raw_status, "updated_at": updated_at.isoformat()}
        for name, value in _check_fields(extra_fields).items():
            body[RECORD_COLUMNS[name]] = value

        rows = await self._request(
            "PATCH", RECORDS_TABLE, params={"id": f"eq.{record_id}"}, body=body, returning=True
        )
        if not rows:
            raise RecordNotFoundError(f"Inspection {record_id} not found")
        actors = await self._resolve_actors([rows[0].get(CREATED_BY_COLUMN)])
        return self._row_to_record(rows[0], actors)

    async def delete_record(self, record_id: str) -> None:
        """
        Delete the record, then its history.

        History rows are only removed once the parent delete is confirmed;
        with an ON DELETE CASCADE foreign key the second call finds nothing.
        """
        await self.read_record(record_id)
        rows = await self._request(
            "DELETE", RECORDS_TABLE, params={"id": f"eq.{record_id}"}, returning=True
        )
        if not rows:
            raise RecordNotFoundError(f"Inspection {record_id} not found")
        await self._request("DELETE", HISTORY_TABLE, params={"peritagem_id": f"eq.{record_id}"})

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def append_history_entry(
        self,
        record_id: str,
        previous_raw_status: Optional[str],
        new_raw_status: str,
        actor_id: Optional[str],
        occurred_at: datetime,
        note: Optional[str] = None,
    ) -> HistoryEntry:
        body = {
            "peritagem_id": record_id,
            "status_antigo": previous_raw_status,
            "status_novo": new_raw_status,
            "alterado_por": actor_id,
            "created_at": occurred_at.isoformat(),
        }
        if note:
            body[NOTE_COLUMN] = note

        rows = await self._request("POST", HISTORY_TABLE, body=body, returning=True)
        if not rows:
            raise PersistenceError(f"Store did not confirm history entry for {record_id}")
        actors = await self._resolve_actors([actor_id])
        return self._row_to_entry(rows[0], actors)

    async def list_history(self, record_id: str) -> List[HistoryEntry]:
        rows = await self._request(
            "GET",
            HISTORY_TABLE,
            params={"select": "*", "peritagem_id": f"eq.{record_id}", "order": "created_at.asc"},
        )
        actors = await self._resolve_actors(row.get("alterado_por") for row in rows)
        entries = [self._row_to_entry(row, actors) for row in rows]
        entries.sort(key=lambda e: e.occurred_at)
        return entries

    async def resolve_actor(self, user_id: str) -> Optional[Actor]:
        return (await self._resolve_actors([user_id])).get(str(user_id))

    # -------------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------------

    async def add_intake_item(self, item: IntakeItem) -> IntakeItem:
        body = {
            "id": item.item_id,
            "os_interna": item.internal_order,
            "cliente": item.client_name,
            "data_chegada": item.arrival_date,
            "status": item.status,
            "created_at": item.created_at.isoformat(),
        }
        rows = await self._request("POST", INTAKE_TABLE, body=body, returning=True)
        if not rows:
            raise PersistenceError(f"Store did not confirm intake item {item.item_id}")
        return self._row_to_intake(rows[0])

    async def list_intake_items(self) -> List[IntakeItem]:
        rows = await self._request(
            "GET", INTAKE_TABLE, params={"select": "*", "status": f"eq.{INTAKE_WAITING}", "order": "created_at.desc"},
        )
        return [self._row_to_intake(row) for row in rows]

    async def delete_intake_item(self, item_id: str) -> None:
        rows = await self._request(
            "DELETE", INTAKE_TABLE, params={"id": f"eq.{item_id}"}, returning=True
        )
        if not rows:
            raise RecordNotFoundError(f"Intake item {item_id} not found")
