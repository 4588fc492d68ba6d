"""Keyword heuristics the prompt builder branches on.

These are trigger-word heuristics, not intent classification: they operate on
lower-cased input with fixed word lists and regular expressions and are not
guaranteed to be correct. Keep them pure so they can be tested in isolation.
"""

import re
from enum import Enum


class DocIntent(str, Enum):
    NONE = ""
    SUMMARY = "文档总结"
    REWRITE = "文档改写"
    TASK = "文档任务"


DOC_WORDS = (
    "文档", "本文", "这篇", "这份", "当前文档", "当前笔记", "笔记",
    "article", "note", "this doc", "this note",
)

SUMMARY_WORDS = ("总结", "概述", "提炼", "摘要", "总结一下", "summarize", "summary")

REWRITE_WORDS = ("改写", "润色", "重写", "优化", "rewrite", "polish")

DOC_TASK_WORDS = (
    "分析", "解释", "问答", "回答", "翻译", "提取", "抽取", "对比", "比较",
    "结构化", "整理", "优化", "改成", "生成",
    "qa", "analyze", "explain", "translate", "extract", "compare",
)

ATTACH_TASK_WORDS = (
    "总结", "概述", "提炼", "摘要", "改写", "润色", "重写", "分析", "解释",
    "翻译", "提取", "抽取", "对比", "比较", "整理", "生成",
    "summarize", "summary", "rewrite", "polish", "analyze", "explain",
    "translate", "extract", "compare",
)

REFER_BACK_WORDS = (
    "上文", "上一条", "刚才", "前面", "上述", "之前", "刚刚", "总结的内容", "上一步",
    "that summary", "previous answer", "last answer", "previous result", "above",
)

WRITE_ACTION_WORDS = (
    "覆盖", "写入", "替换", "保存", "放到", "写到", "粘贴到",
    "apply", "overwrite", "replace", "write",
)

ROUTING_REPLY_MARKERS = ("stray key", "stray keystroke", "skill-creator", "skill-installer")

_GREETING_RE = re.compile(r"^(你好|您好|嗨|哈喽|hello|hi|hey)[!！,.。 ]*$", re.IGNORECASE)
_WHO_RE = re.compile(r"^(你是谁|你是什么模型|what are you|who are you)[?？!！ ]*$", re.IGNORECASE)
_CAPABILITY_RE = re.compile(r"^(你能做什么|你可以做什么|help|帮助|能帮我什么)[?？!！ ]*$", re.IGNORECASE)
_CJK_RE = re.compile(r"[一-龥]")

_NO_ROUTING = "不要说误触按键，不要转成技能分流。"


def _contains_any(text: str, words) -> bool:
    return any(w in text for w in words)


def rewrite_short_chat_intent(user_input: str) -> str:
    """Return a canned prompt for greetings and "who/what can you do" questions.

    Returns ``""`` when the input is not one of those short intents.
    """
    text = str(user_input or "").strip()
    if not text:
        return ""
    normalized = text.lower()

    if _GREETING_RE.match(normalized):
        return "\n".join([
            "你是 Obsidian 里的中文助手。",
            "用户在打招呼，请直接用中文友好回复一句，并简要说明你可以做的三件事：",
            "1) 总结当前文档",
            "2) 基于 @[[文档路径]] 回答",
            "3) 改写/提炼当前文档",
            _NO_ROUTING,
            f"用户原话: {text}",
        ])

    if _WHO_RE.match(normalized):
        return "\n".join([
            "你是 Obsidian 里的 Codex 助手。",
            "请直接用中文回答你是谁，并说明你在当前插件中的作用。",
            _NO_ROUTING,
            f"用户原话: {text}",
        ])

    if _CAPABILITY_RE.match(normalized):
        return "\n".join([
            "请用中文直接列出你能帮用户做的事项（3-6条），结合当前文档工作流。",
            _NO_ROUTING,
            f"用户原话: {text}",
        ])

    return ""


def detect_doc_intent(user_input: str) -> DocIntent:
    """Classify a request as document summary, rewrite, generic task or none.

    Summary and rewrite need both a task word and a document-referring word;
    the generic task category accepts either.
    """
    text = str(user_input or "").strip().lower()
    if not text:
        return DocIntent.NONE
    mentions_doc = _contains_any(text, DOC_WORDS)
    if _contains_any(text, SUMMARY_WORDS) and mentions_doc:
        return DocIntent.SUMMARY
    if _contains_any(text, REWRITE_WORDS) and mentions_doc:
        return DocIntent.REWRITE
    if mentions_doc or _contains_any(text, DOC_TASK_WORDS):
        return DocIntent.TASK
    return DocIntent.NONE


def should_attach_doc_context(user_input: str, has_refs: bool) -> bool:
    if has_refs:
        return True
    text = str(user_input or "").lower()
    if not text:
        return False
    return _contains_any(text, DOC_WORDS) or _contains_any(text, ATTACH_TASK_WORDS)


def should_carry_forward_last_assistant(user_input: str) -> bool:
    """True when the input refers back to the previous answer ("above", "刚才"...)."""
    text = str(user_input or "").strip().lower()
    if not text:
        return False
    if _contains_any(text, REFER_BACK_WORDS):
        return True
    return "总结" in text and _contains_any(text, WRITE_ACTION_WORDS)


def wants_chinese_reply(user_input: str) -> bool:
    text = str(user_input or "")
    return "中文" in text or "汉语" in text or bool(_CJK_RE.search(text))


def looks_like_routing_reply(reply: str) -> bool:
    """Detect answers where the agent routed chat into vault/skill triage."""
    source = str(reply or "").lower()
    if not source:
        return False
    if _contains_any(source, ROUTING_REPLY_MARKERS):
        return True
    return "what do you want to do in" in source and "vault" in source
