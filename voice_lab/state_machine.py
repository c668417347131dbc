"""ボイスセッション状態管理

このモジュールは、Voice Labのターンテイキング状態遷移を明示的に管理します。
状態は IDLE / LISTENING / PROCESSING / SPEAKING のいずれか1つであり、
許可された遷移以外はコントローラーが拒否します。
"""

from enum import Enum, auto
import logging

logger = logging.getLogger(__name__)


class ControllerState(Enum):
    """
    ターンテイキング状態定義

    Attributes:
        IDLE: 待機中（マイクボタンのタップ、または自動モードの再開待ち）
        LISTENING: 聞いている（音声認識中）
        PROCESSING: 考え中（バックエンドの応答生成中）
        SPEAKING: 発話中（音声合成の再生中）
    """
    IDLE = auto()        # 待機中
    LISTENING = auto()   # 聞いている
    PROCESSING = auto()  # 考え中
    SPEAKING = auto()    # 発話中


class StateTransition:
    """
    状態遷移管理

    ターンテイキングの状態遷移ルールを定義し、
    不正な状態遷移を検出します。

    Note:
        手動割り込み（マイクボタンの再タップ）は IDLE 以外の全状態から
        IDLE への遷移として表現されます。
    """

    # 許可される状態遷移の定義
    ALLOWED_TRANSITIONS = {
        ControllerState.IDLE: {ControllerState.LISTENING},
        ControllerState.LISTENING: {ControllerState.PROCESSING, ControllerState.IDLE},
        ControllerState.PROCESSING: {ControllerState.SPEAKING, ControllerState.IDLE},
        ControllerState.SPEAKING: {ControllerState.LISTENING, ControllerState.IDLE},
    }

    @classmethod
    def is_valid_transition(cls, from_state: ControllerState, to_state: ControllerState) -> bool:
        """
        状態遷移の妥当性チェック

        Args:
            from_state: 現在の状態
            to_state: 遷移先の状態

        Returns:
            True: 遷移可能, False: 遷移不可

        Examples:
            >>> StateTransition.is_valid_transition(ControllerState.IDLE, ControllerState.LISTENING)
            True
            >>> StateTransition.is_valid_transition(ControllerState.IDLE, ControllerState.SPEAKING)
            False
        """
        return to_state in cls.ALLOWED_TRANSITIONS.get(from_state, set())

    @classmethod
    def get_allowed_transitions(cls, from_state: ControllerState) -> set:
        """
        指定した状態から遷移可能な状態の一覧を取得

        Args:
            from_state: 現在の状態

        Returns:
            遷移可能な状態のセット
        """
        return cls.ALLOWED_TRANSITIONS.get(from_state, set())
