from replbridge.cli import main

main()
