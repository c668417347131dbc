"""
voice_lab - Science Buddy の音声会話（Voice Lab）

生徒が理科のAIチューター「Science Buddy」とハンズフリーで会話するための
ターンテイキング制御とセッション管理を提供します。

主要モジュール:
- controller: 音声認識・応答生成・音声合成を順序付ける状態機械
- session_store: 音声セッションの読み込み・下書き・保存・切り替え・削除
- repository: セッション行の保存先（Supabase / インメモリ）
- backend: Groq による応答・タイトル生成
- speech: SpeechRecognition / pyttsx3 のアダプター

システムアーキテクチャ:
1. app.py: コンソールからの操作（Enterでマイクボタン）
2. controller.py: IDLE → LISTENING → PROCESSING → SPEAKING のループ
"""

from .controller import VoiceSessionController
from .session_store import VoiceSessionStore
from .state_machine import ControllerState

__all__ = [
    'VoiceSessionController',
    'VoiceSessionStore',
    'ControllerState',
]

__version__ = '1.0.0'
