# cadbatch

`cadbatch` is a library of building blocks for sending many CAD drawings to
a multimodal chat model and collecting the answers during long, unattended
runs. Failed requests are retried with exponential backoff, a circuit
breaker stops work against a failing service, failed files can be kept in a
dead letter queue, and progress is written to disk so that an interrupted
run can resume.

## Installation

```
pip install cadbatch
```

Pillow is the only dependency. Page counting of PDFs calls the command-line
tools `pdfinfo`, `pdftoppm -info` or `qpdf --show-npages`, whichever works
first; if none is installed, every PDF is counted as one page.

## Talking to a model

Subclass `ChatClient` from `cadbatch.session` and implement its async
`chat(prompt, images)` method; `images` is a list of base64-encoded JPEG
strings. A `BatchSession` reads a file, shrinks the image to fit
`max_image_dimension` (see `encode_image`), builds the prompt
"这是一张{drawing_type}。{question}" and calls the client. Its
`process_with_retry(path, file_name)` retries failures that
`BatchError.from_app_error` classifies as retryable, waiting
`base_delay_ms * 2**attempt` between attempts, and raises the last error.
A `SessionPool` hands out its sessions in round-robin order.

```python
import asyncio
from datetime import datetime, timezone
from pathlib import Path

from cadbatch.batch_result import BatchResult, FileResult, OutputFormat
from cadbatch.errors import AppError, BatchError
from cadbatch.output import save_result
from cadbatch.session import ChatClient, SessionPool


class MyClient(ChatClient):
    name = "my-model"

    async def chat(self, prompt, images):
        return "answer text"  # call your model here


async def run():
    pool = SessionPool(MyClient(), 2, "culvert layout", "List the dimensions.")
    result = BatchResult(
        BatchResult.generate_id(),
        datetime.now(timezone.utc),
        progress_file=Path(".batch_progress.json"),
    )
    for path in sorted(Path("drawings").glob("*.png")):
        session = pool.next_session()
        try:
            answer = await session.process_with_retry(path, path.name)
        except AppError as exc:
            error = str(BatchError.from_app_error(exc))
            result.add_result(FileResult.failed(path.name, session.drawing_type, session.question, error))
        else:
            result.add_result(FileResult.success(path.name, session.drawing_type, session.question, answer, 0))
    result.finish()
    save_result(result, "results.csv", OutputFormat.CSV)
    print(result.total, result.success, result.failed, result.stats)


asyncio.run(run())
```

`BatchResult.add_result` rewrites the progress file after every result, and
`BatchResult.load_from_file` reads it back, so a caller can skip files that
already have results. `finish()` adds `avg_latency_ms` and `success_rate` to
`stats` and removes the progress file. `save_result` in `cadbatch.output`
writes JSON or CSV; `OutputFormat.parse` selects CSV for `"csv"` in any case
and JSON for anything else.

## Streaming a directory of PDFs

`StreamBatchProcessor` in `cadbatch.stream_processor` takes a
`StreamBatchProcessorConfig` and a `SessionPool`:

```python
from pathlib import Path

from cadbatch.stream_processor import StreamBatchProcessor, StreamBatchProcessorConfig

config = StreamBatchProcessorConfig(
    pdfs_per_batch=5,
    progress_file=Path(".stream_progress.json"),
    output_file=Path("final.json"),
)
processor = StreamBatchProcessor(config, pool)
final = await processor.process_directory("pdfs")
```

It plans the work with `create_processing_plan` from `cadbatch.planner`
(the PDFs directly in the directory, sorted, split into batches of
`pdfs_per_batch`, with page counts capped at `max_pages_per_pdf` when that
is above 0), then handles every page of every batch through a session. With
`enable_dynamic_concurrency` a `ConcurrencyController` tracks latency and
rate-limit errors. Each batch is saved to a temporary directory, batch state
is kept in a `BatchProgress` file (`cadbatch.progress`) so completed batches
are skipped on the next run, and `FinalResult.from_batch_results` in
`cadbatch.merger` merges the batches, keeping the first result for each
file name, and writes `output_file` when one is set.

## Building blocks

- `CircuitBreaker` (`cadbatch.circuit_breaker`): closed, open and half-open
  states, with a limit on probe requests while half-open.
- `DeadLetterQueue` (`cadbatch.dead_letter_queue`): failed files with their
  `BatchError`, optionally persisted to JSON by atomic writes.
- `ConcurrencyController` (`cadbatch.concurrency_controller`): raises the
  concurrency on fast responses, lowers it on slow ones and on rate limits.
- `BatchError` and the `AppError` family (`cadbatch.errors`): classify
  failures as retryable, fatal, a corrupted image or an exceeded quota.

## What the package does not do

- It has no command-line program; everything is used from Python.
- It has no ready-made client for any model service; you supply a
  `ChatClient`.
- It has no processor that walks a directory of images and resumes from a
  progress file on its own; the example above shows how to assemble one.
- It does not render PDF pages to images. A session is given the PDF file
  itself and decodes it with Pillow, which cannot read PDFs, so
  `StreamBatchProcessor` records such pages as failed results unless your
  files are in a format Pillow reads.