# marketplace/services/variants.py
"""
Остатки по вариантам товара.

В базе живут два формата поля ``products.variants``:

* legacy: список измерений ``[{"name": "Couleur", "options": [...], "quantities": [...]}]``,
  где ``quantities[i]`` относится к ``options[i]``;
* current: объект ``{"variants": [{"name": "Rouge", "quantity": 3}], "options": [...]}``.

Формат разбирается один раз в ``VariantStock.load`` в плоский список ``VariantEntry``;
дальше сервисы работают только с ним, а ``dump`` пишет количества обратно
в копию исходной структуры (остальные поля не трогаем).
"""
import copy
import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

LEGACY = "legacy"
CURRENT = "current"

# старые данные пришли из французской версии витрины
_NAME_KEYS = ("name", "nom")
_QTY_KEYS = ("quantity", "quantite")
_QTYS_KEYS = ("quantities", "quantites")


def _norm(s: Any) -> str:
    return str(s if s is not None else "").strip().casefold()


def _first_key(d: dict, keys: Tuple[str, ...]) -> Optional[str]:
    for k in keys:
        if k in d:
            return k
    return None


def _to_int(v: Any) -> int:
    try:
        return max(int(v or 0), 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class VariantEntry:
    key: str
    quantity: int
    # путь до количества внутри исходного JSON
    path: Tuple[Any, ...]
    # legacy: (измерение, опция); current: (имя, None)
    dimension: str = ""
    option: str = ""


@dataclass
class VariantStock:
    origin: str
    entries: List[VariantEntry] = field(default_factory=list)
    raw: Any = None

    # ---------- разбор ----------
    @classmethod
    def load(cls, raw: Any) -> Optional["VariantStock"]:
        """Возвращает None, если у товара нет вариантов с учётом остатков."""
        if raw is None or raw == "" or raw == [] or raw == {}:
            return None
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                return None

        if isinstance(raw, dict) and isinstance(raw.get("variants"), list):
            vs = cls._load_current(raw)
        elif isinstance(raw, list):
            vs = cls._load_legacy(raw)
        else:
            return None
        return vs if vs.entries else None

    @classmethod
    def _load_current(cls, raw: dict) -> "VariantStock":
        entries = []
        for i, v in enumerate(raw["variants"]):
            if not isinstance(v, dict):
                continue
            name_key = _first_key(v, _NAME_KEYS)
            if name_key is None:
                continue
            qty_key = _first_key(v, _QTY_KEYS) or "quantity"
            name = str(v[name_key])
            entries.append(VariantEntry(
                key=name,
                quantity=_to_int(v.get(qty_key)),
                path=("variants", i, qty_key),
                dimension=name,
            ))
        return cls(origin=CURRENT, entries=entries, raw=raw)

    @classmethod
    def _load_legacy(cls, raw: list) -> "VariantStock":
        entries = []
        for d_idx, dim in enumerate(raw):
            if not isinstance(dim, dict):
                continue
            name_key = _first_key(dim, _NAME_KEYS)
            qtys_key = _first_key(dim, _QTYS_KEYS)
            options = dim.get("options") or []
            # измерение без количеств остатки не ведёт
            if name_key is None or qtys_key is None or not isinstance(options, list):
                continue
            qtys = dim.get(qtys_key) or []
            for o_idx, option in enumerate(options):
                qty = qtys[o_idx] if o_idx < len(qtys) else 0
                entries.append(VariantEntry(
                    key=f"{dim[name_key]}:{option}",
                    quantity=_to_int(qty),
                    path=(d_idx, qtys_key, o_idx),
                    dimension=str(dim[name_key]),
                    option=str(option),
                ))
        return cls(origin=LEGACY, entries=entries, raw=raw)

    # ---------- запись ----------
    def dump(self) -> Any:
        out = copy.deepcopy(self.raw)
        for e in self.entries:
            if self.origin == CURRENT:
                _, i, qty_key = e.path
                out["variants"][i][qty_key] = e.quantity
            else:
                d_idx, qtys_key, o_idx = e.path
                qtys = out[d_idx].get(qtys_key) or []
                if len(qtys) <= o_idx:
                    qtys = list(qtys) + [0] * (o_idx + 1 - len(qtys))
                qtys[o_idx] = e.quantity
                out[d_idx][qtys_key] = qtys
        return out

    @property
    def aggregate(self) -> int:
        """
        Общий остаток товара. В legacy каждое измерение делит одни и те же
        штуки по-своему, поэтому берём минимум сумм по измерениям.
        """
        if self.origin == CURRENT:
            return sum(e.quantity for e in self.entries)
        per_dimension = {}
        for e in self.entries:
            per_dimension[e.dimension] = per_dimension.get(e.dimension, 0) + e.quantity
        return min(per_dimension.values())

    # ---------- выбор покупателя ----------
    def match(self, selection: Any) -> List[VariantEntry]:
        """
        Находит записи, к которым относится выбор покупателя.

        current: ``{"variant": {"name": "Rouge"}}``, ``{"variant": "Rouge"}``,
        ``{"name": "Rouge"}`` или просто ``"Rouge"``.
        legacy:  ``{"Couleur": "Rouge", "Taille": "M"}``, по записи на каждое измерение.
        """
        if not selection:
            return []
        if self.origin == CURRENT:
            name = _selected_name(selection)
            if name is None:
                return []
            return [e for e in self.entries if _norm(e.key) == _norm(name)][:1]

        if not isinstance(selection, dict):
            return []
        matched = []
        for dim, option in selection.items():
            if isinstance(option, (dict, list)):
                continue
            for e in self.entries:
                if _norm(e.dimension) == _norm(dim) and _norm(e.option) == _norm(option):
                    matched.append(e)
                    break
        return matched


def _selected_name(selection: Any) -> Optional[str]:
    if isinstance(selection, str):
        return selection
    if not isinstance(selection, dict):
        return None
    inner = selection.get("variant")
    if isinstance(inner, str):
        return inner
    if isinstance(inner, dict):
        key = _first_key(inner, _NAME_KEYS)
        return str(inner[key]) if key else None
    key = _first_key(selection, _NAME_KEYS)
    return str(selection[key]) if key else None


def available_stock(product, selection: Any = None) -> int:
    """Сколько можно продать с учётом выбранного варианта."""
    aggregate = max(int(product.stock or 0), 0)
    vs = VariantStock.load(product.variants)
    if vs is None:
        return aggregate
    matched = vs.match(selection)
    return min([aggregate] + [e.quantity for e in matched])
