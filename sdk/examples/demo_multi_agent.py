"""
Demo script showing Spanora SDK usage
"""
import os
import random
import time

import spanora

tracer = spanora.init(
    api_key=os.getenv("SPANORA_API_KEY", "local-dev-key"),
    endpoint=os.getenv("SPANORA_ENDPOINT", "http://localhost:8000"),
    service_name="demo",
)


@tracer.tool("Web Search")
def search_web(query: str) -> list[dict]:
    """Simulated web search tool"""
    time.sleep(random.uniform(0.2, 0.5))
    return [
        {"title": f"Result 1 for {query}", "url": "https://example.com/1"},
        {"title": f"Result 2 for {query}", "url": "https://example.com/2"},
    ]


def calculate(expression: str) -> float:
    """Simulated calculator tool that sometimes fails"""
    time.sleep(random.uniform(0.1, 0.2))
    if random.random() < 0.3:
        raise ArithmeticError(f"could not evaluate {expression}")
    return random.uniform(1, 100)


def call_llm(prompt: str) -> str:
    """Simulated LLM call"""
    with tracer.llm("chat", model="gpt-4o", provider="openai") as span:
        time.sleep(random.uniform(0.5, 1.0))
        span.set_usage(random.randint(100, 500), random.randint(50, 200))
        return f"LLM response to: {prompt[:50]}..."


@tracer.track("researcher")
def research_agent(topic: str) -> str:
    results = search_web(topic)
    return call_llm(f"Analyze these results about {topic}: {results}")


@tracer.track("writer")
def writer_agent(topic: str, research: str) -> str:
    metric = tracer.run_tool("Calculator", calculate, f"quality_score({topic})")
    if not metric.ok:
        print(f"   Calculator failed ({metric.error}); continuing without a score")
    return call_llm(f"Write an article about {topic} using this research: {research}")


@tracer.track("editor")
def editor_agent(content: str) -> str:
    return call_llm(f"Edit and improve this content: {content[:200]}")


def run_demo():
    """Run the demo multi-agent workflow"""
    print("Spanora Demo")
    print("=" * 50)

    with tracer.span("Content Creation Workflow", kind="chain") as root:
        print(f"Trace ID: {root.trace_id}")
        research = research_agent("Artificial Intelligence trends")
        content = writer_agent("AI Trends", research)
        editor_agent(content)

    delivered = spanora.shutdown()
    print("=" * 50)
    print("Workflow complete!" if delivered else "Workflow complete, but some spans were not delivered")


if __name__ == "__main__":
    run_demo()
