"""输出分支名生成

由任务标题生成可读的 git 分支名，以任务 ID 前 6 位作为后缀保证唯一。
"""

import re

DEFAULT_BRANCH_PREFIX = "task/"
DEFAULT_BRANCH_MAX_LENGTH = 60
MAX_MEANINGFUL_WORDS = 4

# 常见英文停用词，不进入分支名
STOP_WORDS = frozenset(
    """
    a an the to for in on of is it at by be as do if or so up and but not are
    was can has had with will from this that they them then than been have
    just also into some when what which would could should about their there
    these those other please want need like make sure i me my we our you your
    """.split()
)

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9\s-]")
_WORD_SPLIT = re.compile(r"[\s-]+")


def _sanitize_git_ref(ref: str, max_length: int) -> str:
    """截断并修正为合法 git ref（截断时保留 "-<id>" 后缀）"""
    if len(ref) > max_length:
        cut = ref.rfind("-")
        suffix = ref[cut:]
        available = max_length - len(suffix)
        if cut > 0 and available > 0:
            ref = ref[:cut][:available] + suffix
        else:
            ref = ref[:max_length]

    ref = re.sub(r"\.{2,}", ".", ref)
    ref = re.sub(r"[./-]+$", "", ref)
    ref = re.sub(r"/[.-]+", "/", ref)
    ref = re.sub(r"\s+", "-", ref)
    return re.sub(r"-{2,}", "-", ref)


def generate_branch_name(
    title: str,
    task_id: str,
    prefix: str = DEFAULT_BRANCH_PREFIX,
    max_length: int = DEFAULT_BRANCH_MAX_LENGTH,
) -> str:
    """生成分支名，例如 "Add login page to the app" -> "task/add-login-page-app-01hx2k"

    Args:
        title: 任务标题
        task_id: 任务 ID（ULID）
        prefix: 分支前缀
        max_length: 最大长度
    """
    id_suffix = task_id[:6].lower()
    text = _NON_SLUG_CHARS.sub("", title.lower())
    words = [w for w in _WORD_SPLIT.split(text) if w and w not in STOP_WORDS]

    if not words:
        return _sanitize_git_ref(f"{prefix}task-{id_suffix}", max_length)

    slug = "-".join(words[:MAX_MEANINGFUL_WORDS])
    return _sanitize_git_ref(f"{prefix}{slug}-{id_suffix}", max_length)
