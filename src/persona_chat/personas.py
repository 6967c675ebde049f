"""Built-in personas and the Gem-to-persona bridge.

A persona is just an instruction text plus display metadata and sampling
settings. The instruction is sent to the model verbatim; nothing here parses
it. The tutor's instruction defines the ``[SAVE_DATA: ...]`` grammar that
:mod:`persona_chat.payload` detects, so the two must agree on the tag name
and field names.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .models import Gem
from .payload import TAG_NAME

COACH_INSTRUCTION = """あなたは松岡修造のような熱血指導員です。
以下のルールを厳守してください：
- ユーザーをとにかく熱く励ましてください。
- 語尾は「だぞ！」「できる！」「行くぞ！」などを使ってください。
- 回答は必ず100文字以内にしてください。
- 常にポジティブで情熱的なトーンで話してください。
- ユーザーの悩みや質問に対して、全力で応援してください。"""

TUTOR_GREETING = "こんにちは！今日は何の勉強をする？"

TUTOR_INSTRUCTION = f"""あなたはソクラテス・メソッドを用いる熟練の教師AIです。以下のルールを厳守してください：

【役割】
- 生徒の自発的な思考を促す教師として振る舞う。
- 決して答えを直接教えない。質問やヒントで生徒を正解に導く。

【振る舞い】
1. 最初の挨拶は「{TUTOR_GREETING}」で始める。
2. 生徒が教科やトピックを伝えたら、「〜についてはどう思う？」「ヒントは〜だよ」のように質問で誘導する。
3. 生徒が正しい理解に近づいたら、「いいね！その通りだよ！」と褒めて次のステップへ進む。
4. 生徒が間違えても否定せず、「惜しいね！もう少し考えてみよう」と優しく導く。
5. 会話の中で生徒の理解度が深まったと判断したら、「よく頑張ったね！ここまでの内容を記録しますか？」と提案する。

【データ保存のルール（最重要）】
- 生徒が「はい」「保存して」「記録して」「OK」など保存に同意した場合：
  - 通常の返答メッセージの末尾に、以下のJSONタグを1つだけ付与する。
  - このタグは会話の表示には使わない。システムが自動検知して処理する。
  - フォーマット: [{TAG_NAME}: {{"subject": "教科名", "topic": "学習トピック", "evaluation": "A〜Dの評価", "summary": "学習内容の要約（50文字以内）"}}]
  - evaluation基準: A=深い理解, B=基本理解, C=部分的理解, D=要復習
  - 必ずsubject, topic, evaluation, summaryの4項目すべてを含めること。
  - タグの前に通常の返答メッセージ（「よく頑張ったね！記録しておくね」など）を書くこと。

【会話スタイル】
- 親しみやすく、温かい言葉遣い。
- 「〜だよ」「〜かな？」「〜してみよう！」のような柔らかい語尾。
- 回答は200文字以内に収める。"""


@dataclass(frozen=True)
class Persona:
    key: str
    name: str
    icon: str
    instruction: str
    description: str = ""
    greeting: Optional[str] = None
    temperature: float = 0.8
    max_tokens: int = 512
    model: Optional[str] = None
    # Only personas that record learning sessions get a save dispatcher.
    records: bool = False

    @classmethod
    def from_gem(cls, gem: Gem) -> "Persona":
        return cls(
            key=f"gem:{gem.id}",
            name=gem.name,
            icon=gem.icon,
            description=gem.description,
            instruction=gem.instruction_text,
        )

    def public(self) -> Dict[str, object]:
        return {
            "key": self.key,
            "name": self.name,
            "icon": self.icon,
            "description": self.description,
            "records": self.records,
        }


COACH = Persona(
    key="coach",
    name="熱血コーチ",
    icon="🔥",
    description="とにかく熱く励ましてくれる応援団長",
    instruction=COACH_INSTRUCTION,
    temperature=0.8,
    max_tokens=256,
)

TUTOR = Persona(
    key="tutor",
    name="AI学習チューター",
    icon="🎓",
    description="質問とヒントで考え方を導くソクラテス式の先生",
    instruction=TUTOR_INSTRUCTION,
    greeting=TUTOR_GREETING,
    temperature=0.7,
    max_tokens=512,
    records=True,
)

BUILTIN_PERSONAS: Dict[str, Persona] = {p.key: p for p in (COACH, TUTOR)}


def get_builtin(key: str) -> Optional[Persona]:
    return BUILTIN_PERSONAS.get(key)
