"""損益計算とエグジット判定の純粋関数群

I/Oも隠れた状態も持たない。ポジションは ``amount`` / ``entry_price`` /
``highest_price`` / ``current_price`` / ``profit_loss`` /
``trailing_stop_percentage`` 属性を持つ任意のオブジェクトでよい。
"""
from typing import Iterable, List, Optional, Tuple, Any
from dataclasses import dataclass, field
from enum import Enum

from app.models.positions import DEFAULT_TRAILING_STOP_PERCENTAGE


STOP_LOSS_PERCENTAGE = -20.0  # 固定、設定不可

# 優先度判定の帯（両端を含まない）
APPROACHING_STOP_LOSS_BAND = (-20.0, -10.0)
APPROACHING_TAKE_PROFIT_BAND = (25.0, 30.0)

LAMPORTS_PER_SOL = 1_000_000_000
MIN_SOL_FOR_FEES_LAMPORTS = 10_000_000  # 0.01 SOL
FEE_RESERVE_PER_MILLE = 995  # 0.5%を手数料用に確保


class TriggerType(str, Enum):
    """エグジットトリガー"""
    NONE = "NONE"
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"


class PositionPriority(str, Enum):
    """監視優先度"""
    HIGH = "high"
    REGULAR = "regular"


@dataclass(frozen=True)
class ProfitLoss:
    """損益計算結果"""
    absolute: float
    percentage: float


@dataclass(frozen=True)
class TriggerDecision:
    """トリガー判定結果"""
    trigger: TriggerType
    highest_price: float
    profit_loss: ProfitLoss
    drop_percentage: float

    @property
    def fired(self) -> bool:
        return self.trigger != TriggerType.NONE


@dataclass
class PositionSizeCalculation:
    """買いポジションサイズ計算結果"""
    size_lamports: int
    balance_lamports: int
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    reasoning: List[str] = field(default_factory=list)


def compute_profit_loss(amount: float, entry_price: float, current_price: float) -> ProfitLoss:
    """損益計算

    率は (現在価値 - 取得価値) / 取得価値 × 100。取得価値が0なら0。
    """
    current_value = amount * current_price
    entry_value = amount * entry_price
    absolute = current_value - entry_value
    percentage = (absolute / entry_value) * 100 if entry_value > 0 else 0.0
    return ProfitLoss(absolute=absolute, percentage=percentage)


def compute_trigger(position: Any, observed_price: float) -> TriggerDecision:
    """ストップロス・トレーリングストップ判定

    1. 観測価格を含めて最高値を更新
    2. 損益率 <= -20% ならSTOP_LOSS
    3. 最高値からの下落率 >= trailing_stop_percentage ならTRAILING_STOP
    4. それ以外はNONE

    両方の条件を同時に満たす場合はSTOP_LOSSを返す。
    """
    previous_peak = position.highest_price or position.entry_price
    highest_price = max(previous_peak, observed_price)

    profit_loss = compute_profit_loss(position.amount, position.entry_price, observed_price)

    drop_percentage = 0.0
    if highest_price > 0:
        drop_percentage = (highest_price - observed_price) / highest_price * 100

    if profit_loss.percentage <= STOP_LOSS_PERCENTAGE:
        trigger = TriggerType.STOP_LOSS
    elif highest_price > 0 and drop_percentage >= _trailing_stop_of(position):
        trigger = TriggerType.TRAILING_STOP
    else:
        trigger = TriggerType.NONE

    return TriggerDecision(
        trigger=trigger,
        highest_price=highest_price,
        profit_loss=profit_loss,
        drop_percentage=drop_percentage,
    )


def last_known_percentage(position: Any) -> float:
    """保存済み損益から損益率を計算（APIコールなし）"""
    entry_value = position.amount * position.entry_price
    if entry_value <= 0:
        return 0.0
    return (position.profit_loss or 0.0) / entry_value * 100


def is_approaching_stop_loss(percentage: float) -> bool:
    low, high = APPROACHING_STOP_LOSS_BAND
    return low < percentage < high


def is_approaching_take_profit(percentage: float) -> bool:
    low, high = APPROACHING_TAKE_PROFIT_BAND
    return low < percentage < high


def classify_priority(position: Any) -> PositionPriority:
    """優先度分類

    現在価格が未取得、またはストップロス/利確帯に接近中ならHIGH。
    """
    if not position.current_price or not position.entry_price:
        return PositionPriority.HIGH

    percentage = last_known_percentage(position)
    if is_approaching_stop_loss(percentage) or is_approaching_take_profit(percentage):
        return PositionPriority.HIGH
    return PositionPriority.REGULAR


def partition_by_priority(positions: Iterable[Any]) -> Tuple[List[Any], List[Any]]:
    """(高優先度, 通常) に分割。各グループ内の順序は維持"""
    high_priority = []
    regular = []
    for position in positions:
        if classify_priority(position) == PositionPriority.HIGH:
            high_priority.append(position)
        else:
            regular.append(position)
    return high_priority, regular


def calculate_position_size(balance_lamports: int,
                            confidence: float,
                            max_position_size_percent: float = 0.02) -> int:
    """シグナル信頼度に応じた買いサイズ（lamports）

    基本サイズは残高の2%、信頼度で50-100%に調整し、0.5%を手数料用に残す。
    """
    base_size = balance_lamports * int(round(max_position_size_percent * 100)) // 100
    confidence_adjustment = int(max(50.0, min(confidence, 100.0)))
    adjusted_size = base_size * confidence_adjustment // 100
    return adjusted_size * FEE_RESERVE_PER_MILLE // 1000


def validate_position_size(size_lamports: int, balance_lamports: int) -> PositionSizeCalculation:
    """買いサイズ検証"""
    result = PositionSizeCalculation(
        size_lamports=size_lamports,
        balance_lamports=balance_lamports,
        is_valid=True,
    )

    if size_lamports <= 0:
        result.errors.append("ポジションサイズが0です")
        result.is_valid = False

    if size_lamports + MIN_SOL_FOR_FEES_LAMPORTS >= balance_lamports:
        result.errors.append("ポジションサイズと手数料の合計が残高を超えています")
        result.is_valid = False

    if size_lamports > balance_lamports // 2:
        result.errors.append("ポジションサイズが残高の50%を超えています")
        result.is_valid = False

    result.reasoning.append(f"残高: {balance_lamports / LAMPORTS_PER_SOL:.4f} SOL")
    result.reasoning.append(f"購入サイズ: {size_lamports / LAMPORTS_PER_SOL:.4f} SOL")
    return result


def normalize_token_amount(amount: float, decimals: Optional[int]) -> float:
    """生単位の数量を表示・集計用に正規化"""
    return amount / (10 ** (decimals or 0))


def _trailing_stop_of(position: Any) -> float:
    return position.trailing_stop_percentage or DEFAULT_TRAILING_STOP_PERCENTAGE
