#!/usr/bin/env python3
"""
CLI entry points for the ghost-mannequin pipeline.
"""

import argparse
import json
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

from .config import load_config
from .errors import GhostPipelineError, http_status_for
from .models import GhostRequest, RequestOptions
from .pipeline import GhostMannequinPipeline
from .steps.step2_consolidation import main as consolidate_main


def ghoststudio_consolidate():
    """CLI entry point for offline consolidation of two saved analyses."""
    consolidate_main()


def ghoststudio_pipeline():
    """Run the complete end-to-end pipeline."""
    parser = argparse.ArgumentParser(
        description="Ghost-Mannequin Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run full pipeline
    ghoststudio-pipeline --flatlay shirt.jpg

    # With an on-model reference and the QA loop
    ghoststudio-pipeline --flatlay shirt.jpg --on-model worn.jpg --enable-qa --max-qa-iterations 2

    # Run with custom configuration
    ghoststudio-pipeline --flatlay https://example.com/shirt.jpg --config pipeline.yml
        """
    )

    parser.add_argument("--flatlay", required=True, help="Flat-lay image (path, URL or data URL)")
    parser.add_argument("--on-model", help="Optional on-model reference image")
    parser.add_argument("--out", default="./pipeline_output", help="Output directory")
    parser.add_argument("--config", help="Pipeline configuration YAML file")
    parser.add_argument("--session-id", help="Custom session ID (auto-generated if not provided)")

    parser.add_argument("--output-size", choices=["1024x1024", "2048x2048"], default="2048x2048")
    parser.add_argument("--background", choices=["white", "transparent"], default="white")
    parser.add_argument("--no-preserve-labels", action="store_true", help="Do not ask the renderer to keep label text")
    parser.add_argument("--enable-qa", action="store_true", help="Enable the QA review / re-render loop")
    parser.add_argument("--max-qa-iterations", type=int, help="Cap on QA re-render iterations")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    session_id = args.session_id or f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{str(uuid.uuid4())[:8]}"

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger = logging.getLogger("ghoststudio.cli")

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    summary_path = out_dir / "pipeline_summary.json"

    try:
        config = load_config(args.config)
        config.output_dir = str(out_dir / "renders")
        if args.enable_qa:
            config.qa.enabled = True
        if args.max_qa_iterations is not None:
            config.qa.max_iterations = args.max_qa_iterations
        config.validate()

        request = GhostRequest(
            flatlay=args.flatlay,
            on_model=args.on_model,
            options=RequestOptions(
                preserve_labels=not args.no_preserve_labels,
                output_size=args.output_size,
                background_color=args.background,
            ),
        )
        pipeline = GhostMannequinPipeline.from_config(config)
    except GhostPipelineError as e:
        logger.error(f"💥 Pipeline could not start ({e.kind.value}): {e.message}")
        with open(summary_path, "w") as f:
            json.dump({"sessionId": session_id, "status": "failed", "error": e.to_dict()}, f, indent=2)
        sys.exit(2)

    result = pipeline.process(request, session_id=session_id)
    payload = result.to_dict()
    payload["timestamp"] = datetime.now().isoformat()
    with open(summary_path, "w") as f:
        json.dump(payload, f, indent=2, default=str)

    print("\n" + "=" * 60)
    if result.ok:
        print("🎉 PIPELINE COMPLETE!")
        print("=" * 60)
        print(f"📍 Session: {session_id}")
        print(f"⏱️  Total Time: {payload['metrics']['processingTime']}")
        print(f"🖼️  Render: {result.render_url}")
    else:
        print("💥 PIPELINE FAILED")
        print("=" * 60)
        print(f"📍 Session: {session_id}")
        print(f"❌ {payload['error']['stage']}: {payload['error']['code']} - {payload['error']['message']}")
        print(f"🌐 HTTP status equivalent: {http_status_for(result.error)}")
    print(f"📋 Summary: {summary_path}")
    print("=" * 60)

    if not result.ok:
        sys.exit(1)


if __name__ == "__main__":
    ghoststudio_pipeline()
