# file: tests/test_context_pruner.py

import pytest

from branchtree.core.context.context_pruner import ContextPruner


def conversation(turns):
    messages = []
    for i in range(turns):
        messages.append({"role": "user", "content": f"question {i}"})
        messages.append({"role": "assistant", "content": f"answer {i}"})
    return messages


@pytest.fixture
def pruner():
    return ContextPruner({"max_messages": 4, "pruning_strategy": "fifo"})


def test_short_context_is_untouched(pruner):
    messages = conversation(2)
    assert pruner.prune(messages) == messages


def test_fifo_keeps_most_recent_messages(pruner):
    messages = conversation(3) + [{"role": "user", "content": "question 3"}]

    pruned = pruner.prune(messages)

    # The last four start with "answer 1", which is dropped
    assert [m["content"] for m in pruned] == ["question 2", "answer 2", "question 3"]
    assert pruned[0]["role"] == "user"


def test_fifo_window_starts_on_user_message(pruner):
    pruned = pruner.prune(conversation(5))

    assert pruned[0] == {"role": "user", "content": "question 3"}
    assert len(pruned) == 4


def test_prune_does_not_mutate_input(pruner):
    messages = conversation(5)
    pruner.prune(messages)
    assert len(messages) == 10


def test_none_strategy_keeps_everything():
    pruner = ContextPruner({"max_messages": 2, "pruning_strategy": "none"})
    assert len(pruner.prune(conversation(5))) == 10


@pytest.mark.parametrize("max_messages", [0, None])
def test_falsy_limit_disables_pruning(max_messages):
    pruner = ContextPruner({"max_messages": max_messages, "pruning_strategy": "fifo"})
    assert len(pruner.prune(conversation(5))) == 10


def test_unknown_strategy_falls_back_to_fifo(caplog):
    pruner = ContextPruner({"max_messages": 2, "pruning_strategy": "summarize"})

    pruned = pruner.prune(conversation(3))

    assert pruned == [{"role": "user", "content": "question 2"}, {"role": "assistant", "content": "answer 2"}]
    assert "Unknown pruning strategy" in caplog.text


def test_update_config(pruner):
    pruner.update_config({"max_messages": 2, "pruning_strategy": "fifo"})
    assert len(pruner.prune(conversation(5))) == 2
