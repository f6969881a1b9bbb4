# run.py

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "streamguard.main:app",
        host="0.0.0.0",
        port=5000,
        reload=False,
        workers=1,  # Single worker - cycle locks and the event queue are in-process
    )
