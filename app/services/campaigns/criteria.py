"""
Criterios de audiencia das campanhas.

O filtro salvo em `target_audience` e uma pequena AST de predicados
(campo, operador, valor) validada contra um schema fixo de campos
permitidos. Nada aqui acessa o banco: a avaliacao recebe a linha do
contato ja carregada pelo AudienceResolver.

Formato aceito (JSON):
    {
        "logic": "AND" | "OR",
        "conditions": [
            {"field": "tags", "operator": "contains_any", "value": ["diabete"]},
            {"field": "custom_field", "custom_field_id": "...", "operator": "equals", "value": "x"}
        ]
    }
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional

from dateutil.parser import parse as parse_datetime

from app.core.exceptions import ValidationError


class FieldType(str, Enum):
    """Tipos de campo segmentavel."""

    BOOLEAN = "boolean"
    STRING = "string"
    RELATION = "relation"
    ARRAY = "array"
    DATE = "date"
    NUMBER = "number"
    CUSTOM = "custom"


class Logic(str, Enum):
    """Combinacao das condicoes."""

    AND = "AND"
    OR = "OR"


OPERATORS = {
    FieldType.BOOLEAN: ("equals",),
    FieldType.STRING: ("equals", "not_equals", "in", "not_in", "contains", "not_contains"),
    FieldType.RELATION: ("equals", "not_equals", "in", "not_in"),
    FieldType.ARRAY: ("contains", "not_contains", "contains_any", "contains_all"),
    FieldType.DATE: ("equals", "before", "after", "between"),
    FieldType.NUMBER: ("equals", "not_equals", "greater_than", "less_than", "between"),
    FieldType.CUSTOM: ("equals", "not_equals", "contains", "not_contains"),
}

# Operadores que recebem lista de valores
LIST_OPERATORS = {"in", "not_in", "contains_any", "contains_all"}


@dataclass(frozen=True)
class SegmentField:
    """Campo do contato disponivel para segmentacao."""

    name: str
    type: FieldType
    label: str
    column: Optional[str] = None
    options: tuple = ()

    def to_dict(self) -> dict:
        """Converte para dicionario (catalogo exibido na UI)."""
        return {
            "name": self.name,
            "label": self.label,
            "type": self.type.value,
            "operators": list(OPERATORS[self.type]),
            "options": list(self.options),
        }


SEGMENT_FIELDS = {
    "is_active": SegmentField("is_active", FieldType.BOOLEAN, "Active patient", "is_active"),
    "language_preference": SegmentField(
        "language_preference",
        FieldType.STRING,
        "Preferred language",
        "language_preference",
        options=("fr", "en", "es", "nl", "de"),
    ),
    "linked_dietitian_id": SegmentField(
        "linked_dietitian_id", FieldType.RELATION, "Linked dietitian", "linked_dietitian_ids"
    ),
    "tags": SegmentField("tags", FieldType.ARRAY, "Tags", "tags"),
    "last_visit_date": SegmentField(
        "last_visit_date", FieldType.DATE, "Last visit", "last_visit_date"
    ),
    "visit_count": SegmentField("visit_count", FieldType.NUMBER, "Number of visits", "visit_count"),
    "created_at": SegmentField("created_at", FieldType.DATE, "Registration date", "created_at"),
    "custom_field": SegmentField("custom_field", FieldType.CUSTOM, "Custom field", "custom_fields"),
}


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"not a boolean: {value!r}")


def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_datetime(str(value)).date()


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    return float(value)


def _lower(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""


@dataclass(frozen=True)
class Condition:
    """Um predicado (campo, operador, valor) ja validado e normalizado."""

    field: str
    operator: str
    value: Any = None
    custom_field_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        """
        Cria condicao a partir do JSON salvo, validando contra o schema.

        Raises:
            ValidationError: campo/operador desconhecido ou valor invalido
        """
        if not isinstance(data, dict):
            raise ValidationError("Audience condition must be an object")

        field_name = data.get("field")
        operator = data.get("operator")
        custom_field_id = data.get("custom_field_id") or data.get("customFieldId")

        segment_field = SEGMENT_FIELDS.get(field_name)
        if not segment_field:
            raise ValidationError(
                f"Unknown audience field: {field_name}",
                details={"allowed": list(SEGMENT_FIELDS)},
            )

        if operator not in OPERATORS[segment_field.type]:
            raise ValidationError(
                f"Operator '{operator}' is not allowed for field '{field_name}'",
                details={"allowed": list(OPERATORS[segment_field.type])},
            )

        if segment_field.type == FieldType.CUSTOM and not custom_field_id:
            raise ValidationError("custom_field conditions require custom_field_id")

        try:
            value = cls._normalize(segment_field, operator, data.get("value"))
        except (TypeError, ValueError, OverflowError) as e:
            raise ValidationError(
                f"Invalid value for field '{field_name}' with operator '{operator}'",
                details={"value": data.get("value"), "reason": str(e)},
            )

        return cls(
            field=field_name,
            operator=operator,
            value=value,
            custom_field_id=str(custom_field_id) if custom_field_id else None,
        )

    @staticmethod
    def _normalize(segment_field: SegmentField, operator: str, value: Any) -> Any:
        """Converte o valor bruto para o tipo esperado pelo operador."""
        field_type = segment_field.type

        if operator == "between":
            valores = _as_list(value)
            if len(valores) != 2:
                raise ValueError("between expects exactly two values")
            if field_type == FieldType.DATE:
                inicio, fim = _as_date(valores[0]), _as_date(valores[1])
                if inicio is None or fim is None:
                    raise ValueError("between expects two dates")
            else:
                inicio, fim = _as_number(valores[0]), _as_number(valores[1])
            if inicio > fim:
                inicio, fim = fim, inicio
            return (inicio, fim)

        if field_type == FieldType.BOOLEAN:
            return _as_bool(value)

        if field_type == FieldType.DATE:
            parsed = _as_date(value)
            if parsed is None:
                raise ValueError("date value is required")
            return parsed

        if field_type == FieldType.NUMBER:
            return _as_number(value)

        if field_type in (FieldType.RELATION, FieldType.ARRAY) or operator in LIST_OPERATORS:
            valores = tuple(str(v) for v in _as_list(value) if v not in (None, ""))
            if not valores:
                raise ValueError("at least one value is required")
            return valores

        if value is None:
            raise ValueError("value is required")
        return str(value)

    def to_dict(self) -> dict:
        """Converte para o formato JSON persistido."""
        value = self.value
        if isinstance(value, tuple):
            value = [v.isoformat() if isinstance(v, date) else v for v in value]
        elif isinstance(value, date):
            value = value.isoformat()

        data = {"field": self.field, "operator": self.operator, "value": value}
        if self.custom_field_id:
            data["custom_field_id"] = self.custom_field_id
        return data

    def matches(self, contact: dict) -> bool:
        """Avalia o predicado contra a linha de um contato."""
        segment_field = SEGMENT_FIELDS[self.field]
        raw = contact.get(segment_field.column)
        if segment_field.type == FieldType.CUSTOM:
            raw = (raw or {}).get(self.custom_field_id)

        avaliador = {
            FieldType.BOOLEAN: self._match_boolean,
            FieldType.STRING: self._match_string,
            FieldType.CUSTOM: self._match_string,
            FieldType.RELATION: self._match_relation,
            FieldType.ARRAY: self._match_array,
            FieldType.DATE: self._match_date,
            FieldType.NUMBER: self._match_number,
        }[segment_field.type]
        return avaliador(raw)

    def _match_boolean(self, raw: Any) -> bool:
        return bool(raw) == self.value

    def _match_string(self, raw: Any) -> bool:
        atual = _lower(raw)
        op = self.operator
        if op in ("in", "not_in"):
            dentro = atual in {_lower(v) for v in self.value}
            return dentro if op == "in" else not dentro
        alvo = _lower(self.value)
        if op == "equals":
            return raw is not None and atual == alvo
        if op == "not_equals":
            return raw is None or atual != alvo
        if op == "contains":
            return raw is not None and alvo in atual
        return raw is None or alvo not in atual  # not_contains

    def _match_relation(self, raw: Any) -> bool:
        atuais = {str(v) for v in _as_list(raw)}
        sobrepoe = bool(atuais & set(self.value))
        if self.operator in ("equals", "in"):
            return sobrepoe
        return not sobrepoe

    def _match_array(self, raw: Any) -> bool:
        atuais = {_lower(v) for v in _as_list(raw)}
        alvos = {_lower(v) for v in self.value}
        if self.operator in ("contains", "contains_any"):
            return bool(atuais & alvos)
        if self.operator == "contains_all":
            return alvos <= atuais
        return not (atuais & alvos)  # not_contains

    def _match_date(self, raw: Any) -> bool:
        try:
            atual = _as_date(raw)
        except (TypeError, ValueError, OverflowError):
            return False
        if atual is None:
            return False
        if self.operator == "equals":
            return atual == self.value
        if self.operator == "before":
            return atual < self.value
        if self.operator == "after":
            return atual > self.value
        inicio, fim = self.value
        return inicio <= atual <= fim

    def _match_number(self, raw: Any) -> bool:
        try:
            atual = _as_number(raw if raw is not None else 0)
        except (TypeError, ValueError):
            return False
        if self.operator == "equals":
            return atual == self.value
        if self.operator == "not_equals":
            return atual != self.value
        if self.operator == "greater_than":
            return atual > self.value
        if self.operator == "less_than":
            return atual < self.value
        inicio, fim = self.value
        return inicio <= atual <= fim


@dataclass
class AudienceCriteria:
    """Filtro de audiencia de uma campanha."""

    conditions: List[Condition] = field(default_factory=list)
    logic: Logic = Logic.AND

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AudienceCriteria":
        """
        Cria a partir do JSON salvo/recebido. Vazio = toda a base elegivel.

        Raises:
            ValidationError: se algum predicado for invalido
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("Audience criteria must be an object")

        logic_raw = str(data.get("logic") or "AND").upper()
        try:
            logic = Logic(logic_raw)
        except ValueError:
            raise ValidationError(f"Invalid audience logic: {data.get('logic')}")

        conditions_raw = data.get("conditions") or []
        if not isinstance(conditions_raw, list):
            raise ValidationError("Audience conditions must be a list")

        return cls(
            conditions=[Condition.from_dict(c) for c in conditions_raw],
            logic=logic,
        )

    @property
    def is_empty(self) -> bool:
        return not self.conditions

    def matches(self, contact: dict) -> bool:
        """True se o contato atende o filtro."""
        if not self.conditions:
            return True
        resultados = (c.matches(contact) for c in self.conditions)
        if self.logic == Logic.OR:
            return any(resultados)
        return all(resultados)

    def to_dict(self) -> dict:
        """Converte para dicionario."""
        return {
            "logic": self.logic.value,
            "conditions": [c.to_dict() for c in self.conditions],
        }


def list_segment_fields() -> List[dict]:
    """Catalogo de campos e operadores para a tela de segmentacao."""
    return [f.to_dict() for f in SEGMENT_FIELDS.values()]
