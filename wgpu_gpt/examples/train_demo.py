#!/usr/bin/env python3
"""
Minimal training demo for wgpu_gpt.

Trains a tiny GPT on a repeated phrase and samples from it. Demonstrates:
graph construction, forward pass, full backward pass, AdamW
optimization and greedy inference.

Usage:
    python -m wgpu_gpt.examples.train_demo [cpu|gpu]
"""

import sys

import numpy as np

from wgpu_gpt.backend import make_backend
from wgpu_gpt.gpt import GPT, GPTConfig
from wgpu_gpt.graph import Graph
from wgpu_gpt.optimizer import AdamW
from wgpu_gpt.tokenizer import CharTokenizer


def main():
    backend = sys.argv[1] if len(sys.argv) > 1 else "cpu"
    print("wgpu_gpt Training Demo")
    print("=" * 50)

    text = "hello wgpu world. " * 64
    tokenizer = CharTokenizer.from_text(text)
    dataset = tokenizer.tokenize(text)

    config = GPTConfig(
        vocab_size=tokenizer.vocab_size,
        num_tokens=16,
        embedding_degree=32,
        num_layers=2,
        num_heads=2,
        head_size=16,
        batch_size=8,
    )
    rng = np.random.default_rng(42)
    gpt = GPT(rng, Graph(make_backend(backend)), config)
    print(f"Model: {gpt.num_params()} parameters, vocab {tokenizer.vocab_size}")
    print()

    losses = gpt.train(
        dataset,
        steps=200,
        batch_size=config.batch_size,
        backward_limit=None,
        optimizer=AdamW(),
        learning_rate_fn=lambda step: 3e-3,
    )
    for i in range(0, len(losses), 20):
        print(f"Step {i + 1:4d}  loss={losses[i]:.4f}")

    print()
    tokens = gpt.infer(rng, tokenizer.tokenize("hello"), 40, 0.0)
    print("Sample:", tokenizer.untokenize(tokens))


if __name__ == "__main__":
    main()
