"""Voice Labの例外定義"""


class VoiceLabError(Exception):
    """Voice Lab全体の基底例外"""


class BackendError(VoiceLabError):
    """会話バックエンド（応答生成）の失敗"""


class PersistenceError(VoiceLabError):
    """セッション保存先（行ストア）の読み書き失敗"""


class CaptureError(VoiceLabError):
    """
    音声認識の失敗

    Attributes:
        code: エラー種別（"no-speech", "network", "audio-capture" など）
    """

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code


class CaptureBusyError(CaptureError):
    """音声認識サイクルが既に動作中の状態で開始しようとした"""

    def __init__(self, message: str = "capture already active"):
        super().__init__("busy", message)


class SynthesisError(VoiceLabError):
    """音声合成（再生）の失敗"""
