"""Chat prompt assembly.

Two modes:
    - native memory (default): the agent keeps its own thread memory, so the
      prompt is lean -- rules, a budgeted history safety net, compacted
      memory, skills, selection, references and the user message.
    - manual stitching: the prompt carries the conversation itself and is
      shaped by keyword heuristics (canned short-chat rewrites, document
      summary / rewrite / task templates, a general template).

Blocks are joined with blank lines; empty blocks are dropped.
"""

import logging
import math
from typing import List, Optional

from bridge.config import BridgeSettings
from bridge.history_formatter import (
    format_conversation_history,
    format_conversation_history_with_budget,
    get_last_assistant_message,
)
from bridge.intent import (
    DocIntent,
    detect_doc_intent,
    rewrite_short_chat_intent,
    should_attach_doc_context,
    should_carry_forward_last_assistant,
    wants_chinese_reply,
)
from bridge.mentions import (
    MentionResolver,
    format_mention_refs_for_prompt,
    format_one_mention_ref_for_prompt,
    has_mention_ref_text,
)
from bridge.models import ResolvedReference, Session
from bridge.skill_catalog import SkillCatalog, format_skill_refs_for_prompt
from bridge.vault import EditorState, NoteContext, SelectionContext, Vault

logger = logging.getLogger(__name__)

NATIVE_RULES = (
    "你是 Obsidian 对话助手。直接回答用户问题，不要把对话路由成“在 vault 里做什么”。",
    "默认使用中文回答，除非用户明确要求其他语言。",
    "如果用户提到“上文/刚才/继续/用中文回答我”，默认指当前会话上一轮上下文，不要丢失话题。",
)

AGENT_MODE_NATIVE = "请直接完成用户请求；若请求涉及文件操作，请在当前 vault 内实际执行并给出结果。"
ASK_MODE_NATIVE = "当前为 Ask 模式：仅对话回答，不执行文件修改。"

AGENT_MODE_MANUAL = " ".join((
    "当前为 Agent 模式：你必须优先使用可用工具在当前 vault（cwd）内直接执行文件操作。",
    "当用户要求创建/修改/删除/写入文档时，禁止只给建议或示例路径，必须实际执行并完成。",
    "若用户未指定路径，默认使用当前文档所在目录；若当前文档不可用，则使用 vault 根目录。",
    "执行后必须再次读取目标文件进行校验，并在回复中给出“已执行”的文件路径与校验结果。",
))
ASK_MODE_MANUAL = "当前为 Ask 模式：仅文字对话，不执行文件创建/修改/删除，也不执行命令。"

CHINESE_HINT = "请用中文回答。"

# Per-intent template pieces for manual stitching mode
_DOC_TEMPLATES = {
    DocIntent.SUMMARY: {
        "role": "你是文档总结助手。请直接完成任务，不要反问用户。",
        "request": "用户请求",
        "rules": "输出格式:\n1) 三行摘要\n2) 关键要点（3-6条）\n3) 可执行建议（2-4条）",
        "closing": "只输出最终总结正文。",
        "guard_action": "总结",
    },
    DocIntent.REWRITE: {
        "role": "你是文档改写助手。请直接完成改写，不要反问用户。",
        "request": "用户请求",
        "rules": "要求:\n- 保持原意\n- 语言更清晰\n- 保留 Markdown 结构",
        "closing": "只输出改写后的最终文本。",
        "guard_action": "改写",
    },
    DocIntent.TASK: {
        "role": "你是文档任务助手。请直接执行用户任务，不要反问用户。",
        "request": "用户任务",
        "rules": (
            "执行规则:\n"
            "- 以提供的文档内容为主\n"
            "- 若用户要求总结/提炼/分析/问答/翻译/改写，直接给结果\n"
            "- 仅当文档内容为空时才提示补充上下文"
        ),
        "closing": "请直接输出最终结果。",
        "guard_action": "执行任务",
    },
}


def missing_document_message(action: str) -> str:
    return f"请用中文回答：未获取到文档内容，请先打开目标文档或使用 @[[文档路径]] 引用后再{action}。"


def join_blocks(blocks) -> str:
    return "\n\n".join(b for b in blocks if b)


def selection_block(selection: SelectionContext) -> str:
    if not selection.active:
        return ""
    return f"当前选中文本（{selection.line_count} 行）:\n路径: {selection.path or 'unknown'}\n内容:\n{selection.text}"


def compacted_memory_block(session: Optional[Session]) -> str:
    if session is None or not session.compacted_context.strip():
        return ""
    return f"压缩后的长期会话记忆:\n{session.compacted_context.strip()}"


class PromptBuilder:
    """Builds the prompt for one chat turn."""

    def __init__(
        self,
        settings: BridgeSettings,
        *,
        vault: Vault,
        editor: EditorState,
        resolver: MentionResolver,
        skills: SkillCatalog,
        budget,
    ):
        self.settings = settings
        self.vault = vault
        self.editor = editor
        self.resolver = resolver
        self.skills = skills
        self.budget = budget

    def _previous_answer_limit(self) -> int:
        window = self.budget.context_window()
        return min(50000, max(12000, math.floor(window * 0.12)))

    def _previous_answer_block(self, session, user_input: str, refs: List[ResolvedReference]) -> str:
        if refs or not should_carry_forward_last_assistant(user_input):
            return ""
        previous = get_last_assistant_message(session, user_input, self._previous_answer_limit())
        return f"上轮助手结果（本轮可直接引用）:\n{previous}" if previous else ""

    def _skills_block(self, session: Optional[Session]) -> str:
        if session is None:
            return ""
        return format_skill_refs_for_prompt(self.skills.resolve_selected(session.draft_skills))

    def build(self, user_input: str, session: Optional[Session]) -> str:
        if self.settings.native_context_mode:
            return self.build_native(user_input, session)
        return self.build_manual(user_input, session)

    # ----- Native memory mode -----

    def build_native(self, user_input: str, session: Optional[Session]) -> str:
        text = str(user_input or "").strip()
        window = self.budget.context_window()
        refs = self.resolver.resolve(user_input)
        note = self.editor.prompt_note_context(self.vault)

        blocks = list(NATIVE_RULES)
        blocks.append(format_conversation_history_with_budget(
            session, text, max_turns=40, max_total_chars=math.floor(window * 0.8), max_per_message_chars=12000,
        ))
        blocks.append(compacted_memory_block(session))
        blocks.append(self._skills_block(session))
        blocks.append(self._previous_answer_block(session, text, refs))
        blocks.append(selection_block(self.editor.selection_context()))
        if refs:
            blocks.append(f"引用文档:\n{format_mention_refs_for_prompt(refs)}")
        elif self.settings.include_note_context_in_chat and note.path and note.text.strip():
            blocks.append(f"当前文档:\n路径: {note.path}\n内容:\n{note.text}")
        blocks.append(AGENT_MODE_NATIVE if self.settings.agent_mode else ASK_MODE_NATIVE)
        if wants_chinese_reply(text):
            blocks.append(CHINESE_HINT)
        blocks.append(f"用户消息:\n{text}")
        return join_blocks(blocks)

    # ----- Manual stitching mode -----

    def _scope_line(self) -> str:
        return f"当前 Vault 根目录: {self.vault.root}" if self.vault.root else ""

    def _doc_blocks(self, refs: List[ResolvedReference], note: NoteContext):
        """Document sections for the intent templates plus whether any has text."""
        if refs:
            docs = [format_one_mention_ref_for_prompt(r, i, keep_empty=True) for i, r in enumerate(refs)]
            return docs, has_mention_ref_text(refs)
        return [f"文档路径: {note.path or 'unknown'}\n文档内容:\n{note.text or ''}"], bool(note.text.strip())

    def _build_doc_intent(self, intent: DocIntent, user_input: str, session, refs, note) -> str:
        template = _DOC_TEMPLATES[intent]
        docs, has_doc_text = self._doc_blocks(refs, note)
        if not has_doc_text:
            logger.debug("No document content for %s request; returning guard message", intent.value)
            return missing_document_message(template["guard_action"])
        return join_blocks([
            template["role"],
            self._scope_line(),
            format_conversation_history(session, user_input.strip()),
            f"{template['request']}:\n{user_input}",
            selection_block(self.editor.selection_context()),
            template["rules"],
            "\n\n".join(docs),
            template["closing"],
        ])

    def build_manual(self, user_input: str, session: Optional[Session]) -> str:
        text = str(user_input or "").strip()
        history_count = len(session.messages) if session is not None else 0
        if history_count <= 1:
            canned = rewrite_short_chat_intent(text)
            if canned:
                return canned

        note = self.editor.prompt_note_context(self.vault)
        refs = self.resolver.resolve(user_input)
        intent = detect_doc_intent(text)
        if intent is not DocIntent.NONE:
            return self._build_doc_intent(intent, user_input, session, refs, note)

        context_blocks = [
            self._skills_block(session),
            compacted_memory_block(session),
            self._previous_answer_block(session, text, refs),
            selection_block(self.editor.selection_context()),
        ]
        if should_attach_doc_context(user_input, bool(refs)):
            if refs:
                context_blocks.append(f"引用文档:\n{format_mention_refs_for_prompt(refs)}")
            elif note.path and note.text.strip():
                context_blocks.append(f"当前文档路径: {note.path}\n当前文档内容:\n{note.text}")

        return join_blocks([
            "你是 Obsidian 中的 Codex 助手。",
            "请直接回答用户问题，不要把输入判定为误触字符，不要把对话转成技能或安装步骤。",
            "除非用户明确要求执行命令行操作，否则不要让用户去终端执行步骤。",
            AGENT_MODE_MANUAL if self.settings.agent_mode else ASK_MODE_MANUAL,
            "默认使用中文，答案简洁且可执行。",
            self._scope_line(),
            format_conversation_history(session, text),
            *context_blocks,
            f"用户问题:\n{text}",
            "请直接输出最终答复正文。",
        ])
