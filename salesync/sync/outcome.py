from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class SyncResult:
    success: bool
    message: str
    rows: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "rowCount": self.rows,
            "inserted": self.inserted,
            "updated": self.updated,
        }


INACTIVE_MESSAGE = "Integração não ativa."
NO_ORDERS_MESSAGE = "Nenhum pedido encontrado."


def incomplete_config_message(missing: list[str]) -> str:
    return f"Configuração incompleta: {', '.join(missing)}."


def synced_message(inserted: int, updated: int, rows: int, *, unit: str = "pedidos") -> str:
    return f"Sincronizado: {inserted} inseridos, {updated} atualizados ({rows} {unit})."
