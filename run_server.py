import uvicorn
import os

if __name__ == "__main__":
    port = int(os.environ.get("CHAINSPARK_PORT", "8000"))

    print("Starting ChainSpark API Server...")
    print(f"Docs available at: http://localhost:{port}/docs")

    uvicorn.run(
        "chainspark.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=True
    )
