import json
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml


logger = logging.getLogger(__name__)

_KEY_ALIASES = {
    'baseAsset': 'base_asset',
    'quoteAsset': 'quote_asset',
    'zScoreThreshold': 'z_score_threshold',
    'movingAverages': 'moving_averages',
    'profitPercent': 'profit_percent',
    'stopLossPercent': 'stop_loss_percent',
    'allocationPercent': 'allocation_percent',
}

REQUIRED_FIELDS = (
    'symbol',
    'base_asset',
    'quote_asset',
    'z_score_threshold',
    'moving_averages',
    'profit_percent',
    'stop_loss_percent',
)


@dataclass(frozen=True)
class TradingParameterSet:
    symbol: str
    base_asset: str
    quote_asset: str
    z_score_threshold: float
    moving_averages: int
    profit_percent: float
    stop_loss_percent: float
    allocation_percent: float = 10.0
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TradingParameterSet':
        normalized = {_KEY_ALIASES.get(key, key): value for key, value in data.items()}
        for name in REQUIRED_FIELDS:
            if normalized.get(name) is None:
                raise ValueError(f"Missing required parameter: {name}")
        allocation = normalized.get('allocation_percent')
        return cls(
            symbol=str(normalized['symbol']),
            base_asset=str(normalized['base_asset']),
            quote_asset=str(normalized['quote_asset']),
            z_score_threshold=float(normalized['z_score_threshold']),
            moving_averages=int(normalized['moving_averages']),
            profit_percent=float(normalized['profit_percent']),
            stop_loss_percent=float(normalized['stop_loss_percent']),
            allocation_percent=10.0 if allocation is None else float(allocation),
            enabled=normalized.get('enabled') is not False,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def split_symbol(symbol: str, quote_asset: str = 'USDT') -> Optional[tuple]:
    if '/' in symbol:
        base, quote = symbol.split('/', 1)
        return base, quote
    if symbol.endswith(quote_asset) and len(symbol) > len(quote_asset):
        return symbol[:-len(quote_asset)], quote_asset
    return None


class ParameterSetManager:
    """Holds the per-symbol trading parameters with a global-default fallback."""

    def __init__(self, defaults: Optional[Mapping[str, Any]] = None, quote_asset: str = 'USDT'):
        self.defaults = dict(defaults or {})
        self.quote_asset = quote_asset
        self._sets: Dict[str, TradingParameterSet] = {}

    def load_from_file(self, file_path: str) -> List[TradingParameterSet]:
        path = Path(file_path)
        text = path.read_text(encoding='utf-8')
        if path.suffix in ('.yaml', '.yml'):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
        parameter_sets = self._parse(data)
        self.set_parameter_sets(parameter_sets)
        logger.info("Loaded %s parameter sets from %s", len(parameter_sets), path)
        return parameter_sets

    def _parse(self, data: Any) -> List[TradingParameterSet]:
        if isinstance(data, list):
            return [TradingParameterSet.from_dict(item) for item in data]
        if isinstance(data, dict) and isinstance(data.get('parameterSets'), list):
            return [TradingParameterSet.from_dict(item) for item in data['parameterSets']]
        if isinstance(data, dict) and data:
            # Map form: {"BTCUSDT": {...}} or {"BTC/USDT": {...}}
            parsed = []
            for symbol, params in data.items():
                entry = dict(params)
                entry.setdefault('symbol', symbol)
                pair = split_symbol(symbol, self.quote_asset)
                if pair:
                    entry.setdefault('baseAsset', pair[0])
                    entry.setdefault('quoteAsset', pair[1])
                parsed.append(TradingParameterSet.from_dict(entry))
            return parsed
        raise ValueError("Invalid parameter file format. Expected a list of parameter sets or a symbol map.")

    def set_parameter_sets(self, parameter_sets: Iterable[TradingParameterSet]) -> None:
        self._sets.clear()
        for params in parameter_sets:
            if params.enabled:
                self._sets[params.symbol] = params
        logger.info("Configured %s parameter sets", len(self._sets))

    def has(self, symbol: str) -> bool:
        return symbol in self._sets

    def get(self, symbol: str) -> TradingParameterSet:
        params = self._sets.get(symbol)
        if params is not None:
            return params
        return self.default_for(symbol)

    def default_for(self, symbol: str) -> TradingParameterSet:
        pair = split_symbol(symbol, self.quote_asset) or (symbol, self.quote_asset)
        d = self.defaults
        return TradingParameterSet(
            symbol=symbol,
            base_asset=pair[0],
            quote_asset=pair[1],
            z_score_threshold=float(d.get('z_score_threshold', 2.0)),
            moving_averages=int(d.get('moving_averages', 10)),
            profit_percent=float(d.get('profit_percent', 5.0)),
            stop_loss_percent=float(d.get('stop_loss_percent', 2.0)),
            allocation_percent=float(d.get('allocation_percent', 10.0)),
            enabled=True,
        )

    def all(self) -> Dict[str, TradingParameterSet]:
        return dict(self._sets)

    def active_symbols(self) -> List[str]:
        return sorted(symbol for symbol, params in self._sets.items() if params.enabled)

    def update(self, symbol: str, **changes: Any) -> Optional[TradingParameterSet]:
        existing = self._sets.get(symbol)
        if existing is None:
            return None
        updated = replace(existing, **changes)
        self._sets[symbol] = updated
        return updated

    def export_to_file(self, file_path: str, symbols: Optional[Iterable[str]] = None) -> None:
        wanted = list(symbols) if symbols is not None else sorted(self._sets)
        payload = {
            'exportedAt': datetime.now(timezone.utc).isoformat(),
            'parameterSets': [self._sets[s].to_dict() for s in wanted if s in self._sets],
        }
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding='utf-8')
        logger.info("Exported %s parameter sets to %s", len(payload['parameterSets']), path)
