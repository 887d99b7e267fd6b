"""Command line interface: ``wgpu-gpt train`` and ``wgpu-gpt infer``."""

import argparse
import logging
import os
import sys

import numpy as np

from wgpu_gpt.backend import make_backend
from wgpu_gpt.checkpoint import load_training_state, save_training_state
from wgpu_gpt.errors import GraphError
from wgpu_gpt.gpt import GPT, GPTConfig
from wgpu_gpt.graph import Graph
from wgpu_gpt.optimizer import AdamW, linear_warmup_decay
from wgpu_gpt.tokenizer import CharTokenizer

logger = logging.getLogger(__name__)

SAMPLE_TEMPERATURE = 0.5
SAMPLE_COUNT = 100


def _add_model_args(parser):
    parser.add_argument("--backend", choices=["cpu", "gpu"], default="cpu", help="Execution backend")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--num-tokens", type=int, default=64, help="Context size")
    parser.add_argument("--embedding-degree", type=int, default=64, help="Embedding dimension")
    parser.add_argument("--num-layers", type=int, default=4, help="Number of transformer layers")
    parser.add_argument("--num-heads", type=int, default=4, help="Number of attention heads")
    parser.add_argument("--dropout", type=float, default=0.0, help="Dropout probability")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Train and sample a small GPT on wgpu")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    train_parser = subparsers.add_parser("train", help="Train a model")
    train_parser.add_argument("--dataset", required=True, help="Training text file")
    train_parser.add_argument("--vocab", required=True,
                              help="Vocabulary JSON (created from the dataset if missing)")
    train_parser.add_argument("--model", required=True,
                              help="Training state file (resumed when it exists)")
    train_parser.add_argument("--steps", type=int, default=100000, help="Number of steps")
    train_parser.add_argument("--batch-size", type=int, default=32, help="Batch size")
    train_parser.add_argument("--backward-limit", type=int, default=None,
                              help="Limit backward process to last n computations")
    train_parser.add_argument("--save-every", type=int, default=50,
                              help="Sample and save every n steps")
    train_parser.add_argument("--non-strict", action="store_true",
                              help="Load matching tensors only (e.g. different num-layers)")
    _add_model_args(train_parser)

    infer_parser = subparsers.add_parser("infer", help="Generate text from a trained model")
    infer_parser.add_argument("--vocab", required=True, help="Vocabulary JSON")
    infer_parser.add_argument("--model", required=True, help="Training state file")
    infer_parser.add_argument("--prompt", default="\n", help="Prompt text")
    infer_parser.add_argument("--count", type=int, default=100, help="Tokens to generate")
    infer_parser.add_argument("--temperature", type=float, default=0.5,
                              help="Sampling temperature (0 = greedy)")
    _add_model_args(infer_parser)
    return parser


def _config(args, vocab_size: int, batch_size: int) -> GPTConfig:
    return GPTConfig(
        vocab_size=vocab_size,
        num_tokens=args.num_tokens,
        embedding_degree=args.embedding_degree,
        num_layers=args.num_layers,
        num_heads=args.num_heads,
        head_size=args.embedding_degree // args.num_heads,
        dropout=args.dropout,
        batch_size=batch_size,
    )


def train_command(args) -> None:
    with open(args.dataset, "r", encoding="utf-8") as f:
        text = f.read()
    if os.path.isfile(args.vocab):
        tokenizer = CharTokenizer.load(args.vocab)
    else:
        tokenizer = CharTokenizer.from_text(text)
        tokenizer.save(args.vocab)
    dataset = tokenizer.tokenize(text)
    logger.info("Vocab-size: %d unique characters", tokenizer.vocab_size)

    rng = np.random.default_rng(args.seed)
    graph = Graph(make_backend(args.backend))
    gpt = GPT(rng, graph, _config(args, tokenizer.vocab_size, args.batch_size))
    gpt.sync()
    logger.info("Number of parameters: %d", gpt.num_params())

    if os.path.isfile(args.model):
        gpt.set_training_state(load_training_state(args.model), strict=not args.non_strict)
        logger.info("Resumed from %s at step %d", args.model, gpt.optimizer_state.step)

    prompt = tokenizer.tokenize("\n") or [0]

    def callback(model: GPT) -> None:
        sample = model.infer(rng, prompt, SAMPLE_COUNT, SAMPLE_TEMPERATURE)
        logger.info("Generated text:\n%s", tokenizer.untokenize(sample))
        save_training_state(args.model, model.get_training_state())

    gpt.train(
        dataset,
        args.steps,
        args.batch_size,
        args.backward_limit,
        AdamW(),
        linear_warmup_decay(),
        callback=callback,
        callback_every=args.save_every,
    )
    save_training_state(args.model, gpt.get_training_state())


def infer_command(args) -> None:
    tokenizer = CharTokenizer.load(args.vocab)
    rng = np.random.default_rng(args.seed)
    graph = Graph(make_backend(args.backend))
    gpt = GPT(rng, graph, _config(args, tokenizer.vocab_size, 1))
    gpt.sync()
    gpt.set_training_state(load_training_state(args.model), strict=True)

    tokens = gpt.infer(rng, tokenizer.tokenize(args.prompt), args.count, args.temperature)
    print(tokenizer.untokenize(tokens))


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "train":
            train_command(args)
        elif args.command == "infer":
            infer_command(args)
        else:
            parser.print_help()
            return 2
    except (GraphError, ValueError) as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
