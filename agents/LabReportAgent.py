#!/usr/bin/env python3
"""
LabReportAgent

Generates the structured JSON lab report for an experiment code from the
lab manual context. Uses Claude by default; set LAB_REPORT_PROVIDER=openai
to use an OpenAI model instead.

The returned text is not validated here; callers run it through
engine.report_schema.validate_report before saving or rendering it.
"""

import sys
import json
import re
import argparse
import asyncio
from pathlib import Path

# Load environment variables from .env file
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

import os
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

# Allow running as a script from the repository root
sys.path.insert(0, str(Path(__file__).parent.parent))
from engine.errors import GenerationError, LabReportError


SYSTEM_PROMPT = "You are an expert physics lab assistant. Always respond with valid JSON only."


def build_prompt(experiment_code: str, manual_context: str) -> str:
    return f"""You are an expert physics lab assistant at the University of Nairobi.

Using the Manual Context provided below, generate a structured JSON lab report for Experiment Code: "{experiment_code}".

Instructions:
1. Return ONLY valid JSON. Do not wrap in markdown code blocks.
2. **STRICTLY** follow the manual content.
3. The JSON must follow this exact schema:
{{
  "title": "Experiment Title",
  "objectives": ["obj1", "obj2"],
  "apparatus": ["item1", "item2"],
  "theory": "Brief theory in plain text.",
  "procedure": ["step1", "step2"],
  "tableHeaders": ["Col 1 (units)", "Col 2 (units)"],
  "tableData": [[1.0, 2.0], [2.0, 4.0]],
  "graphConfig": {{
    "xColumnIndex": 0,
    "yColumnIndex": 1,
    "xLabel": "Label X",
    "yLabel": "Label Y",
    "title": "Graph Title"
  }} OR null,
  "questions": [
    {{ "question": "Question text from manual?", "answer": "Answer based on theory/results." }}
  ] OR [],
  "calculationScript": "A JavaScript function body (string) that takes 'rows' (array of number arrays) and returns an object of calculated values. Example: 'const m = rows[0][0]; return {{ slope: m * 2, g: 9.8 }};'",
  "analysisTemplate": "Analysis text with placeholders like {{{{slope}}}} and {{{{g}}}} which match keys returned by calculationScript.",
  "discussion": "Discussion text",
  "conclusion": "Conclusion text",
  "simulationType": "one of: 'pendulum', 'heating', 'spring', 'circuit', 'wave', 'general'"
}}

Specific Rules:
- **Graphs**: If the experiment in the manual DOES NOT explicitly require plotting a graph, set "graphConfig" to null. Do not invent a graph.
- **Questions**: If the manual lists specific questions for this experiment, include them and their correct answers in the "questions" array. If there are no specific questions, return an empty array.
- **Data**: Generate PLAUSIBLE FAKE DATA for 'tableData' that follows physics laws. Every row must have one number per header.
- **Calculations**: 'calculationScript' runs in a restricted JavaScript subset: const/let/var, functions and arrow functions, if/else, for, for...of, while, array and object literals, template strings, Math, Number, parseFloat, and the usual array methods (map, filter, reduce, forEach, slice, ...). Do NOT use classes, 'new', 'this', try/catch, regular expressions, Date, JSON or any external library. Always end with 'return {{ ... }};'.

MANUAL CONTEXT:
{manual_context}
"""


def extract_json_text(llm_response: str) -> str:
    """Strip markdown fences and return the outermost JSON object text."""
    cleaned = re.sub(r'^```(?:json)?\s*\n?', '', llm_response.strip(), flags=re.MULTILINE)
    cleaned = re.sub(r'\n?```\s*$', '', cleaned, flags=re.MULTILINE)
    json_match = re.search(r'\{[\s\S]*\}', cleaned)
    if json_match:
        return json_match.group(0)
    return cleaned.strip()


async def _generate_with_anthropic(prompt: str) -> str:
    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        raise GenerationError("ANTHROPIC_API_KEY not found in environment variables. Please set it in .env file.")

    client = AsyncAnthropic(api_key=api_key)
    model = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5-20250929")

    response = await client.messages.create(
        model=model,
        max_tokens=8192,
        temperature=0.3,
        system=SYSTEM_PROMPT,
        messages=[
            {
                "role": "user",
                "content": prompt
            }
        ]
    )

    llm_response = ""
    for content_block in response.content:
        if hasattr(content_block, 'text'):
            llm_response += content_block.text

    if getattr(response, 'stop_reason', None) == 'max_tokens':
        print(f"[LabReportAgent] Warning: response truncated at max_tokens ({len(llm_response)} chars)", file=sys.stderr)
    return llm_response


async def _generate_with_openai(prompt: str) -> str:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise GenerationError("OPENAI_API_KEY not found in environment variables")

    client = AsyncOpenAI(api_key=api_key)
    model = os.getenv("OPENAI_MODEL", "gpt-4o")

    response = await client.chat.completions.create(
        model=model,
        messages=[
            {
                "role": "system",
                "content": SYSTEM_PROMPT
            },
            {
                "role": "user",
                "content": prompt
            }
        ],
        temperature=0.3,
        max_tokens=8000,
        response_format={"type": "json_object"}
    )
    return response.choices[0].message.content or ""


async def generate_lab_report(experiment_code: str, manual_context: str) -> str:
    """
    Ask the model for the lab report of one experiment.

    Args:
        experiment_code: e.g. "A-2"
        manual_context: manual text plus admin references

    Returns:
        Raw report JSON text (unvalidated)

    Raises:
        GenerationError: missing configuration, provider failure or empty response
    """
    prompt = build_prompt(experiment_code, manual_context)
    provider = os.getenv("LAB_REPORT_PROVIDER", "anthropic").lower()
    print(f"[LabReportAgent] Generating {experiment_code} with {provider} (~{len(prompt) // 4} prompt tokens)", file=sys.stderr)

    try:
        if provider == "openai":
            llm_response = await _generate_with_openai(prompt)
        elif provider == "anthropic":
            llm_response = await _generate_with_anthropic(prompt)
        else:
            raise GenerationError(f"Unknown LAB_REPORT_PROVIDER: {provider}")
    except GenerationError:
        raise
    except Exception as e:
        print(f"[LabReportAgent] Generation error: {e}", file=sys.stderr)
        raise GenerationError(f"Failed to generate report: {e}") from e

    if not llm_response.strip():
        raise GenerationError("Empty response from AI")
    return extract_json_text(llm_response)


def main():
    """Main entry point for the agent."""
    parser = argparse.ArgumentParser(
        description="LabReportAgent - Generate an interactive physics lab report"
    )
    parser.add_argument(
        "--experiment-code",
        type=str,
        required=True,
        help="Experiment code from the lab manual, e.g. A-2"
    )
    parser.add_argument(
        "--context-file",
        type=str,
        help="Text file with manual context (default: built-in manual)"
    )
    parser.add_argument(
        "--output",
        type=str,
        help="Path to save the report JSON (default: print to stdout)"
    )
    parser.add_argument(
        "--html-output",
        type=str,
        help="Path to save the interactive HTML report (optional)"
    )
    parser.add_argument(
        "--pdf-output",
        type=str,
        help="Path to save the static PDF report (optional)"
    )

    args = parser.parse_args()

    from engine.document_assembler import build_interactive_html, build_static_pdf
    from engine.report_schema import validate_report
    from tools.lab_manual import PHYSICS_LAB_MANUAL_CONTEXT

    try:
        code = args.experiment_code.strip().upper()
        if args.context_file:
            with open(args.context_file, 'r', encoding='utf-8') as f:
                context = f.read()
        else:
            context = PHYSICS_LAB_MANUAL_CONTEXT

        text = asyncio.run(generate_lab_report(code, context))
        model = validate_report(text)
        payload = model.to_payload()

        if args.output:
            output_path = Path(args.output)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2)
            print(f"Report JSON saved to: {output_path}", file=sys.stderr)

        if args.html_output:
            html_path = Path(args.html_output)
            html_path.parent.mkdir(parents=True, exist_ok=True)
            html_path.write_text(build_interactive_html(model, code), encoding='utf-8')
            print(f"Interactive report saved to: {html_path}", file=sys.stderr)

        if args.pdf_output:
            pdf_path = Path(args.pdf_output)
            pdf_path.parent.mkdir(parents=True, exist_ok=True)
            pdf_path.write_bytes(build_static_pdf(model, code))
            print(f"PDF report saved to: {pdf_path}", file=sys.stderr)

        print(json.dumps(payload, indent=2))

    except LabReportError as error:
        print(f"Error: {error}", file=sys.stderr)
        sys.exit(1)
    except OSError as error:
        print(f"File error: {error}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
