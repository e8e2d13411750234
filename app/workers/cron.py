"""
Expressoes cron de 5 campos (minuto hora dia mes dia-da-semana).

Suporta `*`, listas (1,2,3), intervalos (1-5), passos (*/15, 8-18/2, 5/10)
e dia da semana 0-7 (0 e 7 = domingo). Quando dia do mes e dia da semana
sao ambos restritos, basta um deles casar (regra padrao do cron).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, Optional

from app.core.exceptions import InvalidCronError

# (nome, minimo, maximo)
CAMPOS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)

# Janela maxima de busca do proximo disparo
MAX_LOOKAHEAD_DAYS = 366

HUMAN_SCHEDULES = {
    "* * * * *": "Every minute",
    "0 * * * *": "Every hour",
    "*/5 * * * *": "Every 5 minutes",
    "*/10 * * * *": "Every 10 minutes",
    "*/15 * * * *": "Every 15 minutes",
    "*/30 * * * *": "Every 30 minutes",
    "0 0 * * *": "Every day at midnight",
    "0 8 * * *": "Every day at 8:00 AM",
    "0 0 * * 1": "Every Monday at midnight",
}


@dataclass(frozen=True)
class CronExpression:
    """Expressao cron ja expandida em conjuntos de valores."""

    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    day_restricted: bool
    weekday_restricted: bool

    def matches_day(self, dt: datetime) -> bool:
        # Python: 0=seg ... 6=dom; cron: 0=dom ... 6=sab
        cron_weekday = (dt.weekday() + 1) % 7
        dia_ok = dt.day in self.days
        semana_ok = cron_weekday in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return dia_ok or semana_ok
        return dia_ok and semana_ok

    def matches(self, dt: datetime) -> bool:
        """True se o minuto de `dt` dispara a expressao."""
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self.matches_day(dt)
        )


def _numero(valor: str, nome: str) -> int:
    if not valor.isdigit():
        raise ValueError(f"{nome}: '{valor}' is not a number")
    return int(valor)


def _expandir_campo(campo: str, nome: str, minimo: int, maximo: int) -> set:
    """Expande um campo cron no conjunto de valores que ele aceita."""
    valores = set()
    for parte in campo.split(","):
        if not parte:
            raise ValueError(f"{nome}: empty list item")

        base, _, passo_txt = parte.partition("/")
        passo = 1
        if passo_txt or parte.endswith("/"):
            passo = _numero(passo_txt, nome)
            if passo == 0:
                raise ValueError(f"{nome}: step must be greater than zero")

        if base == "*":
            inicio, fim = minimo, maximo
        elif "-" in base:
            a, _, b = base.partition("-")
            inicio, fim = _numero(a, nome), _numero(b, nome)
            if inicio > fim:
                raise ValueError(f"{nome}: range {base} is reversed")
        else:
            inicio = _numero(base, nome)
            # "5/10" = de 5 ate o maximo, a cada 10
            fim = maximo if passo_txt else inicio

        if inicio < minimo or fim > maximo:
            raise ValueError(f"{nome}: {parte} outside {minimo}-{maximo}")

        valores.update(range(inicio, fim + 1, passo))
    return valores


def parse_cron(schedule: str) -> CronExpression:
    """
    Parse de expressao cron.

    Raises:
        InvalidCronError: formato invalido ou valor fora da faixa
    """
    if not isinstance(schedule, str):
        raise InvalidCronError(str(schedule), "expression must be a string")

    parts = schedule.split()
    if len(parts) != 5:
        raise InvalidCronError(schedule, "expected 5 fields")

    try:
        expandidos = [
            _expandir_campo(campo, nome, minimo, maximo)
            for campo, (nome, minimo, maximo) in zip(parts, CAMPOS)
        ]
    except ValueError as e:
        raise InvalidCronError(schedule, str(e))

    minutes, hours, days, months, weekdays = expandidos
    if 7 in weekdays:
        weekdays = (weekdays - {7}) | {0}

    return CronExpression(
        expression=" ".join(parts),
        minutes=frozenset(minutes),
        hours=frozenset(hours),
        days=frozenset(days),
        months=frozenset(months),
        weekdays=frozenset(weekdays),
        day_restricted=not parts[2].startswith("*"),
        weekday_restricted=not parts[4].startswith("*"),
    )


def validate_cron(schedule: str) -> str:
    """Valida e devolve a expressao normalizada (espacos simples)."""
    return parse_cron(schedule).expression


def cron_matches(schedule: str, now: datetime) -> bool:
    """Verifica se job deve executar no minuto de `now`."""
    return parse_cron(schedule).matches(now)


def next_run_at(schedule: str, after: datetime) -> Optional[datetime]:
    """
    Proximo minuto (estritamente depois de `after`) que dispara a expressao.

    Retorna None se nada casar dentro de MAX_LOOKAHEAD_DAYS (ex: 31 de fevereiro).
    """
    cron = parse_cron(schedule)
    atual = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    limite = atual + timedelta(days=MAX_LOOKAHEAD_DAYS)

    while atual <= limite:
        if atual.month not in cron.months:
            ano = atual.year + (1 if atual.month == 12 else 0)
            mes = 1 if atual.month == 12 else atual.month + 1
            atual = atual.replace(year=ano, month=mes, day=1, hour=0, minute=0)
            continue
        if not cron.matches_day(atual):
            atual = (atual + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if atual.hour not in cron.hours:
            atual = (atual + timedelta(hours=1)).replace(minute=0)
            continue
        if atual.minute not in cron.minutes:
            atual += timedelta(minutes=1)
            continue
        return atual

    return None


def cron_to_human(schedule: str) -> str:
    """Descricao legivel; expressoes fora do mapa sao devolvidas como estao."""
    return HUMAN_SCHEDULES.get(" ".join((schedule or "").split()), schedule)
