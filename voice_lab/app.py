#!/usr/bin/env python3
"""
Voice Lab コンソールアプリケーション

Science Buddy の音声会話（Voice Lab）をターミナルから操作します。
Enterキーがマイクボタン（オーブ）の代わりになり、セッション一覧の表示・
切り替え・削除もコマンドで行えます。

主要機能:
- マイク入力の音声認識（SpeechRecognition）
- Groq による応答生成と pyttsx3 による読み上げ
- シームレスモード（読み上げ後に自動で聞き取りを再開）
- Supabase へのセッション保存（未設定時はメモリ上に保存）

操作:
    Enter    : 話す / 割り込み
    a        : シームレスモード切り替え
    n        : 新しい会話
    l        : 会話一覧
    s <番号> : 会話の切り替え
    d <番号> : 会話の削除
    t        : 現在の会話の表示
    q        : 終了
"""

import argparse
import asyncio
import logging
import sys

from voice_lab.backend import TutorBackend
from voice_lab.config_models import AppConfig, load_config
from voice_lab.controller import VoiceSessionController
from voice_lab.errors import CaptureError
from voice_lab.logging_config import setup_logging
from voice_lab.models import Role, UserProfile
from voice_lab.repository import InMemorySessionRepository, SupabaseSessionRepository
from voice_lab.session_store import VoiceSessionStore
from voice_lab.speech import MicrophoneCapture, Pyttsx3Synthesis
from voice_lab.state_machine import ControllerState

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    ControllerState.IDLE: "Tap to Speak (press Enter)",
    ControllerState.LISTENING: "LISTENING...",
    ControllerState.PROCESSING: "PROCESSING...",
    ControllerState.SPEAKING: "SPEAKING...",
}


class VoiceLabApp:
    """
    Voice Lab コンソールアプリケーション管理クラス

    設定から各サービスを組み立て、キーボード入力をコントローラーの
    操作に変換します。

    Attributes:
        config (AppConfig): アプリケーション設定
        capture (MicrophoneCapture): 音声認識
        synthesis (Pyttsx3Synthesis): 音声合成
        controller (VoiceSessionController): ターンテイキング状態機械
        running (bool): 実行中フラグ
    """

    def __init__(self, config: AppConfig, initial_session_id=None):
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.initial_session_id = initial_session_id
        self.running = True

        if config.uses_supabase:
            repository = SupabaseSessionRepository.from_config(config)
        else:
            self.logger.warning("SUPABASE_URL / SUPABASE_KEY not set, sessions are kept in memory only")
            repository = InMemorySessionRepository()

        profile = UserProfile(name=config.user_name, interests=config.user_interests)
        store = VoiceSessionStore(repository, config.user_id, profile, default_title=config.session.default_title)

        self.capture = MicrophoneCapture.from_config(config.capture)
        self.synthesis = Pyttsx3Synthesis()
        self.controller = VoiceSessionController(
            store,
            TutorBackend.from_config(config),
            self.capture,
            self.synthesis,
            profile=profile,
            voice_preferences=config.synthesis.voice_preferences,
            rate=config.synthesis.rate,
            pitch=config.synthesis.pitch,
            auto_mode=config.session.auto_mode,
            no_speech_idle_delay=config.session.no_speech_idle_delay,
            notify=self.show_notification,
            on_state_change=self.on_state_change,
        )

    def show_notification(self, message: str, level: str = "info"):
        prefix = "!!" if level == "error" else "--"
        print(f"{prefix} {message}")

    def on_state_change(self, old_state: ControllerState, new_state: ControllerState):
        print(f"[{STATUS_LABELS[new_state]}]")

    def print_sessions(self):
        store = self.controller.store
        if not store.sessions:
            print("No saved voice chats yet.")
            return
        for index, session in enumerate(store.sessions, start=1):
            marker = "*" if session.id == store.active_id else " "
            print(f"{marker} {index}. {session.title or 'Voice Chat'} ({len(session.messages)} messages)")

    def print_transcript(self):
        for message in self.controller.store.messages:
            speaker = "You" if message.role == Role.USER else "Science Buddy"
            print(f"{speaker}: {message.text}")

    def _session_at(self, argument: str):
        sessions = self.controller.store.sessions
        try:
            return sessions[int(argument) - 1].id
        except (ValueError, IndexError):
            print(f"No chat number '{argument}'. Use 'l' to list chats.")
            return None

    async def handle_command(self, line: str):
        """
        1行分のキーボード入力を処理

        Args:
            line (str): 入力された行（改行を除く）
        """
        command, _, argument = line.strip().partition(" ")
        command = command.lower()

        if command == "":
            self.controller.tap()
        elif command == "a":
            self.controller.set_auto_mode(not self.controller.auto_mode)
            print(f"Seamless mode: {'ON' if self.controller.auto_mode else 'OFF'}")
        elif command == "n":
            self.controller.new_session()
            self.print_transcript()
        elif command == "l":
            self.print_sessions()
        elif command == "s":
            session_id = self._session_at(argument)
            if session_id and self.controller.switch_session(session_id):
                self.print_transcript()
        elif command == "d":
            session_id = self._session_at(argument)
            if session_id:
                await self.controller.delete_session(session_id)
                self.print_sessions()
        elif command == "t":
            self.print_transcript()
        elif command == "q":
            self.running = False
        else:
            print(__doc__.split("操作:")[1])

    async def run(self):
        """
        アプリケーションのメインループ

        処理フロー:
        1. マイクのキャリブレーション
        2. セッション一覧の読み込み
        3. キーボード入力の処理
        4. クリーンアップ
        """
        self.logger.info("Voice Lab started")
        try:
            await self.capture.calibrate()
        except CaptureError as e:
            self.logger.warning(f"Microphone calibration skipped: {e}")

        await self.controller.load(self.initial_session_id)
        self.print_transcript()
        print(f"[{STATUS_LABELS[self.controller.state]}]")

        loop = asyncio.get_running_loop()
        while self.running:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            await self.handle_command(line.rstrip("\n"))

        await self.cleanup()

    async def cleanup(self):
        self.logger.info("Cleaning up Voice Lab...")
        await self.controller.close()
        self.synthesis.shutdown()
        self.logger.info("Voice Lab exited")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Science Buddy Voice Lab")
    parser.add_argument("--session", help="resume the voice chat with this id")
    args = parser.parse_args(argv)

    config = load_config()
    setup_logging(config.log_dir, config.log_level)

    app = VoiceLabApp(config, initial_session_id=args.session)
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
    except Exception as e:
        logger.error(f"Application error: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
